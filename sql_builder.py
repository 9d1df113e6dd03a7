import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from domain_spec import concept_column_for, domain_id_to_table
from errors import InvalidArgument, TableNotFoundError

logger = logging.getLogger(__name__)

PARAMSTYLE = {
    "postgresql": "%s",
    "duckdb": "?",
}


@dataclass(frozen=True)
class DomainQueryContext:
    domain: str
    table: str
    concept_column: str
    concept_table: str


class SQLBuilder:
    """Builds the SQL text for one schema/dialect pair.

    Table names are resolved case-insensitively against the reflected
    schema, so a builder should live no longer than one analysis call.
    """

    def __init__(self, db_connector, schema: str = "main", dialect: str = "postgresql"):
        if dialect not in PARAMSTYLE:
            raise InvalidArgument(f"Unsupported dialect: {dialect}")
        self.db_connector = db_connector
        self.schema = schema
        self.dialect = dialect
        self.ph = PARAMSTYLE[dialect]
        self._tables: Optional[Dict[str, str]] = None

    def _catalog(self) -> Dict[str, str]:
        if self._tables is None:
            names = self.db_connector.list_tables(self.schema)
            self._tables = {n.lower(): n for n in names}
            logger.info(f"Reflected {len(self._tables)} tables from schema {self.schema}")
        return self._tables

    def resolve_table(self, name: str) -> str:
        catalog = self._catalog()
        actual = catalog.get(str(name).lower())
        if actual is None:
            raise TableNotFoundError(f"Table not found: {name}")
        return f"{self.schema}.{actual}"

    def build_context(self, domain_id: str) -> DomainQueryContext:
        table_name = domain_id_to_table(domain_id)
        return DomainQueryContext(
            domain=domain_id,
            table=self.resolve_table(table_name),
            concept_column=concept_column_for(table_name),
            concept_table=self.resolve_table("concept"),
        )

    def _in_list(self, values: Iterable) -> Tuple[str, tuple]:
        values = tuple(values)
        return ", ".join([self.ph] * len(values)), values

    def concept_domains_sql(self, concept_ids: List[int]) -> Tuple[str, tuple]:
        marks, params = self._in_list(concept_ids)
        sql = f"""
        SELECT concept_id, domain_id
        FROM {self.resolve_table("concept")}
        WHERE concept_id IN ({marks});
        """
        return sql, params

    def concept_names_sql(self, concept_ids: List[int]) -> Tuple[str, tuple]:
        marks, params = self._in_list(concept_ids)
        sql = f"""
        SELECT concept_id, concept_name
        FROM {self.resolve_table("concept")}
        WHERE concept_id IN ({marks});
        """
        return sql, params

    def concept_lookup_sql(self, concept_id: int) -> Tuple[str, tuple]:
        sql = f"""
        SELECT concept_id, concept_name, domain_id, vocabulary_id, concept_class_id
        FROM {self.resolve_table("concept")}
        WHERE concept_id = {self.ph};
        """
        return sql, (concept_id,)

    def concept_rows_sql(self, ctx: DomainQueryContext, concept_ids: List[int]) -> Tuple[str, tuple]:
        marks, params = self._in_list(concept_ids)
        sql = f"""
        SELECT t.person_id, t.{ctx.concept_column} AS concept_id, c.concept_name
        FROM {ctx.table} t
        JOIN {ctx.concept_table} c ON c.concept_id = t.{ctx.concept_column}
        WHERE t.{ctx.concept_column} IN ({marks});
        """
        return sql, params

    def record_count_sql(self, ctx: DomainQueryContext, concept_ids: List[int]) -> Tuple[str, tuple]:
        marks, params = self._in_list(concept_ids)
        sql = f"""
        SELECT COUNT(*) AS total_concept_records
        FROM {ctx.table}
        WHERE {ctx.concept_column} IN ({marks});
        """
        return sql, params

    def person_ids_sql(self, ctx: DomainQueryContext, concept_ids: List[int]) -> Tuple[str, tuple]:
        marks, params = self._in_list(concept_ids)
        sql = f"""
        SELECT DISTINCT person_id
        FROM {ctx.table}
        WHERE {ctx.concept_column} IN ({marks});
        """
        return sql, params

    def total_patients_sql(self) -> Tuple[str, tuple]:
        return f"SELECT COUNT(*) AS total_patients FROM {self.resolve_table('person')};", ()

    def cohort_subjects_sql(self, cohort_definition_id: int) -> Tuple[str, tuple]:
        sql = f"""
        SELECT subject_id, cohort_start_date, cohort_end_date
        FROM {self.resolve_table("cohort")}
        WHERE cohort_definition_id = {self.ph};
        """
        return sql, (cohort_definition_id,)

    def person_columns_sql(self, person_ids: List[int], columns: List[str]) -> Tuple[str, tuple]:
        marks, params = self._in_list(person_ids)
        sql = f"""
        SELECT person_id, {", ".join(columns)}
        FROM {self.resolve_table("person")}
        WHERE person_id IN ({marks});
        """
        return sql, params

    def concept_sample_sql(self, ctx: DomainQueryContext, concept_ids: List[int], limit: int) -> Tuple[str, tuple]:
        sql, params = self.concept_rows_sql(ctx, concept_ids)
        sql = sql.rstrip().rstrip(";") + f"\n        ORDER BY t.person_id\n        LIMIT {int(limit)};"
        return sql, params

    def top_concepts_sql(self, ctx: DomainQueryContext, top_n: int) -> Tuple[str, tuple]:
        sql = f"""
        SELECT g.concept_id, c.concept_name, g.n_records
        FROM (
          SELECT {ctx.concept_column} AS concept_id, COUNT(*) AS n_records
          FROM {ctx.table}
          GROUP BY {ctx.concept_column}
        ) g
        JOIN {ctx.concept_table} c ON c.concept_id = g.concept_id
        ORDER BY g.n_records DESC, g.concept_id
        LIMIT {int(top_n)};
        """
        return sql, ()

    def domain_totals_sql(self, ctx: DomainQueryContext) -> Tuple[str, tuple]:
        sql = f"""
        SELECT COUNT(*) AS total_records,
               COUNT(DISTINCT {ctx.concept_column}) AS unique_concepts,
               COUNT(DISTINCT person_id) AS patients_with_data
        FROM {ctx.table};
        """
        return sql, ()
