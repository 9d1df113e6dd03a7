"""Demographic profiles of a fixed cohort.

The cohort comes either from the ``cohort`` table (by definition id) or from
a caller-supplied DataFrame with a ``person_id`` column. An empty cohort is
always rejected with InvalidArgument.
"""
import logging
import numbers
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd

from concepts import category_names
from covariates import apply_covariates
from errors import InvalidArgument
from sql_builder import SQLBuilder
from utils import percent, strip_concept_suffix

logger = logging.getLogger(__name__)

STAT_COLUMNS = ["cohort_numerator", "cohort_denominator", "database_denominator",
                "percent_cohort", "percent_database"]


def _check_cohort_source(cohort_definition_id, cohort_df):
    if cohort_definition_id is None and cohort_df is None:
        raise InvalidArgument("Must provide either cohort_definition_id or cohort_df")
    if cohort_definition_id is not None and cohort_df is not None:
        raise InvalidArgument("Provide only one of cohort_definition_id or cohort_df, not both")


def get_person_ids_from_cohort_table(cohort_definition_id, db, schema: str = "main",
                                     dialect: str = "postgresql") -> List[int]:
    if (not isinstance(cohort_definition_id, numbers.Integral) or isinstance(cohort_definition_id, bool)
            or cohort_definition_id <= 0):
        raise InvalidArgument("cohort_definition_id must be a positive integer")

    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    sql, params = builder.cohort_subjects_sql(int(cohort_definition_id))
    df = db.execute_query(sql, params)
    if df.empty:
        raise InvalidArgument(f"Cohort with definition ID {cohort_definition_id} not found in database")
    person_ids = sorted({int(s) for s in df["subject_id"].dropna()})
    if not person_ids:
        raise InvalidArgument(f"Cohort with definition ID {cohort_definition_id} has no valid subject_id")
    return person_ids


def get_person_ids_from_dataframe(cohort_df) -> List[int]:
    if not isinstance(cohort_df, pd.DataFrame):
        raise InvalidArgument("cohort_df must be a DataFrame")
    if "person_id" not in cohort_df.columns:
        raise InvalidArgument(f"Cohort DataFrame must contain 'person_id' column. Found columns: {list(cohort_df.columns)}")
    if cohort_df.empty:
        raise InvalidArgument("cohort_df cannot be empty")

    person_ids = sorted({int(p) for p in cohort_df["person_id"].dropna()})
    if not person_ids:
        raise InvalidArgument("No valid person_ids found in cohort_df")
    return person_ids


def get_cohort_person_ids(cohort_definition_id, cohort_df, db, schema: str = "main",
                          dialect: str = "postgresql") -> List[int]:
    _check_cohort_source(cohort_definition_id, cohort_df)
    if cohort_definition_id is not None:
        return get_person_ids_from_cohort_table(cohort_definition_id, db, schema=schema, dialect=dialect)
    return get_person_ids_from_dataframe(cohort_df)


def get_database_total_patients(db, schema: str = "main", dialect: str = "postgresql") -> int:
    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    sql, params = builder.total_patients_sql()
    df = db.execute_query(sql, params)
    return int(df.iloc[0]["total_patients"]) if not df.empty else 0


def _prepare(cohort_definition_id, cohort_df, db, covariate_funcs, schema, dialect):
    person_ids = get_cohort_person_ids(cohort_definition_id, cohort_df, db, schema=schema, dialect=dialect)
    cohort_size = len(person_ids)
    database_size = get_database_total_patients(db, schema=schema, dialect=dialect)
    demographics_df = apply_covariates(person_ids, covariate_funcs, db, schema=schema, dialect=dialect)
    logger.info(f"Profiling cohort of {cohort_size} persons against {database_size} in database")
    return demographics_df, cohort_size, database_size


def _stats(numerator: int, cohort_size: int, database_size: int) -> list:
    return [
        int(numerator),
        cohort_size,
        database_size,
        percent(numerator, cohort_size, 2),
        percent(numerator, database_size, 2),
    ]


def _typed(result_df: pd.DataFrame, category_cols: List[str]) -> pd.DataFrame:
    dtypes = {c: "object" for c in category_cols}
    dtypes.update({
        "cohort_numerator": "int64",
        "cohort_denominator": "int64",
        "database_denominator": "int64",
        "percent_cohort": "float64",
        "percent_database": "float64",
    })
    return result_df.astype(dtypes)


def create_individual_profile_table(df: pd.DataFrame, col: str, cohort_size: int, database_size: int,
                                    db, schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
    covariate_name = strip_concept_suffix(col)
    grouped = df.groupby(col).size()
    keys = grouped.index.tolist()
    names = category_names(keys, col, db, schema=schema, dialect=dialect)

    rows = [[names[value]] + _stats(n, cohort_size, database_size) for value, n in zip(keys, grouped.tolist())]
    result_df = pd.DataFrame(rows, columns=[covariate_name] + STAT_COLUMNS)
    result_df = result_df.sort_values(covariate_name, kind="stable").reset_index(drop=True)
    return _typed(result_df, [covariate_name])


def create_cartesian_profile_table(df: pd.DataFrame, cols: List[str], cohort_size: int, database_size: int,
                                   db, schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
    covariate_names = [strip_concept_suffix(c) for c in cols]
    grouped = df.groupby(cols).size().reset_index(name="cohort_numerator")
    grouped = grouped.sort_values(cols, kind="stable").reset_index(drop=True)

    values = {c: grouped[c].tolist() for c in cols}
    names = {c: category_names(dict.fromkeys(values[c]), c, db, schema=schema, dialect=dialect) for c in cols}
    rows = []
    for i, n in enumerate(grouped["cohort_numerator"].tolist()):
        categories = [names[c][values[c][i]] for c in cols]
        rows.append(categories + _stats(n, cohort_size, database_size))

    result_df = pd.DataFrame(rows, columns=covariate_names + STAT_COLUMNS)
    return _typed(result_df, covariate_names)


def create_individual_profiles(*, cohort_definition_id: Optional[int] = None,
                               cohort_df: Optional[pd.DataFrame] = None, db,
                               covariate_funcs: Sequence[Callable],
                               schema: str = "main", dialect: str = "postgresql") -> Dict[str, pd.DataFrame]:
    """One profile table per covariate, keyed by covariate name.

    Keys drop the ``_concept_id`` suffix (``gender_concept_id`` -> ``gender``).
    Persons whose covariate value is missing are not counted in that table.
    """
    _check_cohort_source(cohort_definition_id, cohort_df)
    covariate_funcs = list(covariate_funcs or [])
    if not covariate_funcs:
        raise InvalidArgument("covariate_funcs cannot be empty for individual profiles")

    demographics_df, cohort_size, database_size = _prepare(
        cohort_definition_id, cohort_df, db, covariate_funcs, schema, dialect)

    result_tables: Dict[str, pd.DataFrame] = {}
    for col in demographics_df.columns:
        if col == "person_id":
            continue
        result_tables[strip_concept_suffix(col)] = create_individual_profile_table(
            demographics_df, col, cohort_size, database_size, db, schema=schema, dialect=dialect)
    return result_tables


def create_cartesian_profiles(*, cohort_definition_id: Optional[int] = None,
                              cohort_df: Optional[pd.DataFrame] = None, db,
                              covariate_funcs: Sequence[Callable],
                              schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
    """Joint profile over every covariate at once.

    Category columns come in reverse of ``covariate_funcs`` order, followed by
    the statistic columns; rows are sorted by the raw covariate values.
    """
    _check_cohort_source(cohort_definition_id, cohort_df)
    covariate_funcs = list(covariate_funcs or [])
    if len(covariate_funcs) < 2:
        raise InvalidArgument(
            f"Cartesian profiles require at least 2 covariate functions, got {len(covariate_funcs)}")

    demographics_df, cohort_size, database_size = _prepare(
        cohort_definition_id, cohort_df, db, covariate_funcs, schema, dialect)

    cols = [c for c in demographics_df.columns if c != "person_id"]
    return create_cartesian_profile_table(demographics_df, cols, cohort_size, database_size,
                                          db, schema=schema, dialect=dialect)
