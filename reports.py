import logging
from typing import Any, Dict, List

import pandas as pd

from domain_spec import get_domain_spec
from errors import InvalidArgument
from sql_builder import DomainQueryContext, SQLBuilder
from utils import round_half_up

logger = logging.getLogger(__name__)


def _domain_context(builder: SQLBuilder, domain: str) -> DomainQueryContext:
    spec = get_domain_spec(domain)
    return DomainQueryContext(
        domain=domain,
        table=builder.resolve_table(spec["table"]),
        concept_column=spec["concept_field"],
        concept_table=builder.resolve_table("concept"),
    )


def _scalar(df: pd.DataFrame, column: str) -> int:
    if df.empty or pd.isna(df.iloc[0][column]):
        return 0
    return int(df.iloc[0][column])


def lookup_concept(db, concept_id: int, schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    sql, params = builder.concept_lookup_sql(int(concept_id))
    df = db.execute_query(sql, params)
    if df.empty:
        logger.info(f"No concept found with ID: {concept_id}")
    return df


def scan_domain_presence(db, domain: str, concept_set: List[int], limit: int = 10,
                         schema: str = "main", dialect: str = "postgresql") -> Dict[str, Any]:
    """Which patients carry ``concept_set`` in one domain, with a small sample."""
    concept_ids = list(concept_set or [])
    if not concept_ids:
        raise InvalidArgument("concept_set cannot be empty")

    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    ctx = _domain_context(builder, domain)

    sql, params = builder.concept_sample_sql(ctx, concept_ids, limit)
    sample = db.execute_query(sql, params)

    sql, params = builder.record_count_sql(ctx, concept_ids)
    total_records = _scalar(db.execute_query(sql, params), "total_concept_records")

    sql, params = builder.person_ids_sql(ctx, concept_ids)
    unique_patients = len(db.execute_query(sql, params))

    sql, params = builder.total_patients_sql()
    total_patients = _scalar(db.execute_query(sql, params), "total_patients")

    return {
        "sample": sample,
        "total_records": total_records,
        "unique_patients": unique_patients,
        "records_per_patient": round_half_up(total_records / unique_patients, 2) if unique_patients else 0.0,
        "population_coverage": round_half_up(unique_patients / total_patients * 100, 2) if total_patients else 0.0,
    }


def summarize_domain_availability(db, domain: str, top_n: int = 10, schema: str = "main",
                                  dialect: str = "postgresql") -> Dict[str, Any]:
    """Most frequent concepts of a domain and how much of the population has data there."""
    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    ctx = _domain_context(builder, domain)

    sql, params = builder.top_concepts_sql(ctx, top_n)
    top = db.execute_query(sql, params)

    sql, params = builder.domain_totals_sql(ctx)
    totals = db.execute_query(sql, params)
    total_records = _scalar(totals, "total_records")
    unique_concepts = _scalar(totals, "unique_concepts")
    patients_with_data = _scalar(totals, "patients_with_data")

    sql, params = builder.total_patients_sql()
    total_patients = _scalar(db.execute_query(sql, params), "total_patients")

    if not top.empty:
        top["percentage"] = [round_half_up(n / total_records * 100, 2) if total_records else 0.0
                             for n in top["n_records"]]
    else:
        top["percentage"] = pd.Series([], dtype="float64")

    return {
        "top_concepts": top,
        "total_records": total_records,
        "unique_concepts": unique_concepts,
        "patients_with_data": patients_with_data,
        "domain_coverage": round_half_up(patients_with_data / total_patients * 100, 2) if total_patients else 0.0,
    }
