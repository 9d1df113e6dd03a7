import logging
from typing import Any, Dict, Iterable, List

import numpy as np

from sql_builder import SQLBuilder

logger = logging.getLogger(__name__)


def get_concepts_by_domain(concept_ids: Iterable[int], db, schema: str = "main",
                           dialect: str = "postgresql") -> Dict[str, List[int]]:
    """Group concept IDs by their OMOP ``domain_id``.

    IDs missing from the concept table are dropped. An empty input gives an
    empty mapping without touching the database; callers decide whether that
    is an error.
    """
    ids = sorted({int(c) for c in concept_ids})
    if not ids:
        return {}

    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    sql, params = builder.concept_domains_sql(ids)
    df = db.execute_query(sql, params)

    grouped: Dict[str, List[int]] = {}
    for _, row in df.iterrows():
        grouped.setdefault(str(row["domain_id"]), []).append(int(row["concept_id"]))

    dropped = len(ids) - sum(len(v) for v in grouped.values())
    if dropped:
        logger.info(f"{dropped} concept id(s) not found in concept table")
    return {domain: sorted(grouped[domain]) for domain in sorted(grouped)}


def get_concept_names(concept_ids: Iterable[int], db, schema: str = "main",
                      dialect: str = "postgresql") -> Dict[int, str]:
    ids = sorted({int(c) for c in concept_ids})
    if not ids:
        return {}
    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    sql, params = builder.concept_names_sql(ids)
    df = db.execute_query(sql, params)
    return {int(r["concept_id"]): str(r["concept_name"]) for _, r in df.iterrows()}


def get_concept_name(concept_id: int, db, schema: str = "main", dialect: str = "postgresql") -> str:
    return get_concept_names([concept_id], db, schema=schema, dialect=dialect).get(int(concept_id), "Unknown")


def _is_concept_value(value, column: str) -> bool:
    return (isinstance(value, (int, np.integer)) and not isinstance(value, (bool, np.bool_))
            and column != "person_id")


def category_names(values: Iterable, column: str, db, schema: str = "main",
                   dialect: str = "postgresql") -> Dict[Any, str]:
    """Map raw covariate values to display names.

    Integer values are treated as concept IDs and looked up in one query;
    anything else is shown as its string form.
    """
    values = list(values)
    concept_ids = [v for v in values if _is_concept_value(v, column)]
    names = get_concept_names(concept_ids, db, schema=schema, dialect=dialect) if concept_ids else {}

    mapping: Dict[Any, str] = {}
    for v in values:
        if _is_concept_value(v, column):
            if int(v) not in names:
                logger.warning(f"Could not retrieve concept name for concept_id {v} in column {column}")
            mapping[v] = names.get(int(v), "Unknown")
        else:
            mapping[v] = str(v)
    return mapping
