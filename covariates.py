import logging
from datetime import date
from functools import partial
from typing import Callable, Iterable, List, Optional, Sequence, Union

import pandas as pd

from errors import InvalidArgument
from sql_builder import SQLBuilder

logger = logging.getLogger(__name__)

Subjects = Union[Iterable[int], pd.DataFrame]


def as_person_frame(subjects: Subjects) -> pd.DataFrame:
    if isinstance(subjects, pd.DataFrame):
        if "person_id" not in subjects.columns:
            raise InvalidArgument(f"Covariate input must contain 'person_id' column. Found columns: {list(subjects.columns)}")
        return subjects
    return pd.DataFrame({"person_id": pd.Series(list(subjects), dtype="int64")})


class CovariateFunction:
    """Adds one named column to a person-ID collection.

    Called as ``fn(subjects, db, schema=..., dialect=...)`` where ``subjects``
    is a sequence of person IDs or a DataFrame with ``person_id``. The input
    rows are kept (left join) and the new column is placed directly after
    ``person_id``.
    """

    column: str = ""

    def fetch(self, person_ids: List[int], db, builder: SQLBuilder) -> pd.DataFrame:
        raise NotImplementedError

    def __call__(self, subjects: Subjects, db, schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
        base = as_person_frame(subjects)
        ids = sorted({int(p) for p in base["person_id"].dropna()})

        if ids:
            builder = SQLBuilder(db, schema=schema, dialect=dialect)
            values = self.fetch(ids, db, builder)
        else:
            values = pd.DataFrame({"person_id": pd.Series([], dtype="int64"), self.column: pd.Series([], dtype="object")})
        values = values[["person_id", self.column]].drop_duplicates("person_id").copy()
        values["person_id"] = values["person_id"].astype("int64")

        base = base.drop(columns=[self.column], errors="ignore")
        merged = base.merge(values, on="person_id", how="left")
        ordered = ["person_id", self.column] + [c for c in base.columns if c != "person_id"]
        return merged[ordered]

    def __repr__(self):
        return f"{type(self).__name__}({self.column})"


class PersonConceptCovariate(CovariateFunction):
    def __init__(self, column: str):
        self.column = column

    def fetch(self, person_ids, db, builder):
        sql, params = builder.person_columns_sql(person_ids, [self.column])
        df = db.execute_query(sql, params)
        if df.empty:
            return pd.DataFrame({"person_id": pd.Series([], dtype="int64"), self.column: pd.Series([], dtype="Int64")})
        df[self.column] = df[self.column].astype("Int64")
        return df


class PatientGender(PersonConceptCovariate):
    def __init__(self):
        super().__init__("gender_concept_id")


class PatientRace(PersonConceptCovariate):
    def __init__(self):
        super().__init__("race_concept_id")


class PatientEthnicity(PersonConceptCovariate):
    def __init__(self):
        super().__init__("ethnicity_concept_id")


class PatientAgeGroup(CovariateFunction):
    column = "age_group"

    def __init__(self, reference_year: Optional[int] = None, width: int = 10, top: int = 100):
        self.reference_year = reference_year
        self.width = width
        self.top = top

    def label(self, age) -> Optional[str]:
        if pd.isna(age) or age < 0:
            return None
        age = int(age)
        if age >= self.top:
            return f"{self.top}+"
        lo = age - age % self.width
        return f"{lo} - {lo + self.width - 1}"

    def fetch(self, person_ids, db, builder):
        year = self.reference_year or date.today().year
        sql, params = builder.person_columns_sql(person_ids, ["year_of_birth"])
        df = db.execute_query(sql, params)
        if df.empty:
            return pd.DataFrame({"person_id": pd.Series([], dtype="int64"), self.column: pd.Series([], dtype="object")})
        ages = year - pd.to_numeric(df["year_of_birth"], errors="coerce")
        df[self.column] = [self.label(a) for a in ages]
        return df[["person_id", self.column]]


get_patient_gender = PatientGender()
get_patient_race = PatientRace()
get_patient_ethnicity = PatientEthnicity()
get_patient_age_group = PatientAgeGroup()

COVARIATES = {
    "gender": get_patient_gender,
    "race": get_patient_race,
    "ethnicity": get_patient_ethnicity,
    "age_group": get_patient_age_group,
}


def covariates_by_name(names: Sequence[str]) -> List[CovariateFunction]:
    unknown = [n for n in names if n not in COVARIATES]
    if unknown:
        raise InvalidArgument(f"Unknown covariate(s): {unknown}. Available: {sorted(COVARIATES)}")
    return [COVARIATES[n] for n in names]


def apply_covariates(person_ids: Subjects, covariate_funcs: Sequence[Callable], db,
                     schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
    """Fold covariate functions over ``person_ids`` in the given order.

    Covariate columns come back right after ``person_id`` in reverse order of
    ``covariate_funcs``, wherever each function placed its column.
    """
    funcs = [partial(fn, db=db, schema=schema, dialect=dialect) for fn in covariate_funcs]
    sub = person_ids if isinstance(person_ids, pd.DataFrame) else list(person_ids)
    added: List[str] = []
    for fn in funcs:
        before = set(sub.columns) if isinstance(sub, pd.DataFrame) else {"person_id"}
        sub = fn(sub)
        added.extend(c for c in as_person_frame(sub).columns if c not in before and c not in added)

    result = as_person_frame(sub)
    covariate_cols = list(reversed(added))
    rest = [c for c in result.columns if c != "person_id" and c not in covariate_cols]
    return result[["person_id"] + covariate_cols + rest]
