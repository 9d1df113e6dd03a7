"""Concept-driven feasibility analysis.

Both entry points classify the caller's concepts by OMOP domain, query each
domain's fact table separately and merge the results. A domain whose table
cannot be resolved is logged and skipped; the rest of the call goes on.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Set

import pandas as pd

from concepts import category_names, get_concepts_by_domain
from covariates import apply_covariates
from errors import InvalidArgument, NotFoundError
from sql_builder import SQLBuilder
from utils import format_number, percent, round_half_up, strip_concept_suffix

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["metric", "value", "interpretation", "domain"]


@dataclass
class DomainMetrics:
    domain: str
    concept_count: int
    patients: Set[int]
    record_count: int
    concept_ids: List[int] = field(default_factory=list)

    @property
    def patient_count(self) -> int:
        return len(self.patients)


@dataclass
class FeasibilitySnapshot:
    total_patients: int
    domains_analyzed: int
    domains: List[DomainMetrics]
    total_records: int
    eligible_patients: Set[int]

    @property
    def unique_patients(self) -> int:
        return len(self.eligible_patients)

    @property
    def records_per_patient(self) -> float:
        if self.unique_patients == 0:
            return 0.0
        return round_half_up(self.total_records / self.unique_patients, 3)

    @property
    def population_coverage(self) -> float:
        return percent(self.unique_patients, self.total_patients, 3)


def _require_concepts(concept_set: Optional[Iterable[int]]) -> List[int]:
    ids = list(concept_set) if concept_set is not None else []
    if not ids:
        raise InvalidArgument("concept_set cannot be empty")
    return ids


def _empty_distribution() -> pd.DataFrame:
    return pd.DataFrame({
        "concept_id": pd.Series([], dtype="int64"),
        "concept_name": pd.Series([], dtype="object"),
        "domain": pd.Series([], dtype="object"),
        "count": pd.Series([], dtype="int64"),
    })


def analyze_concept_distribution(db, concept_set: Iterable[int], covariate_funcs: Sequence[Callable] = (),
                                 schema: str = "main", dialect: str = "postgresql") -> pd.DataFrame:
    """Count records per concept, grouped by domain and optional covariates.

    Returns columns ``concept_id, concept_name, domain, [covariates...], count``
    sorted by ``count`` descending. Concepts without records do not appear.
    """
    concept_ids = _require_concepts(concept_set)
    covariate_funcs = list(covariate_funcs or [])

    concepts_by_domain = get_concepts_by_domain(concept_ids, db, schema=schema, dialect=dialect)
    if not concepts_by_domain:
        return _empty_distribution()

    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    summaries = []
    for domain_id, domain_concepts in concepts_by_domain.items():
        try:
            ctx = builder.build_context(domain_id)
            sql, params = builder.concept_rows_sql(ctx, domain_concepts)
            base_df = db.execute_query(sql, params)
        except NotFoundError as e:
            logger.warning("Error processing domain %s: %s", domain_id, e)
            continue

        if base_df.empty:
            continue
        base_df["domain"] = domain_id

        if not covariate_funcs:
            summary = (base_df.groupby(["concept_id", "concept_name", "domain"], dropna=False)
                       .size().reset_index(name="count"))
        else:
            person_ids = base_df["person_id"].drop_duplicates().tolist()
            covariate_df = apply_covariates(person_ids, covariate_funcs, db, schema=schema, dialect=dialect)
            result_df = base_df.merge(covariate_df, on="person_id", how="left")
            group_cols = [c for c in result_df.columns if c != "person_id"]
            summary = result_df.groupby(group_cols, dropna=False).size().reset_index(name="count")
        summaries.append(summary)

    if not summaries:
        return _empty_distribution()

    all_results = pd.concat(summaries, ignore_index=True)
    return all_results.sort_values("count", ascending=False, kind="stable").reset_index(drop=True)


def _total_patients(db, builder: SQLBuilder) -> int:
    sql, params = builder.total_patients_sql()
    df = db.execute_query(sql, params)
    return int(df.iloc[0]["total_patients"]) if not df.empty else 0


def collect_feasibility(db, concept_set: Iterable[int], schema: str = "main",
                        dialect: str = "postgresql") -> Optional[FeasibilitySnapshot]:
    """Per-domain record and patient metrics for ``concept_set``.

    Returns None when none of the concepts exist in the vocabulary.
    Records are summed across domains; eligible patients are a set union, so
    a patient found in several domains is counted once.
    """
    concept_ids = _require_concepts(concept_set)
    concepts_by_domain = get_concepts_by_domain(concept_ids, db, schema=schema, dialect=dialect)
    if not concepts_by_domain:
        return None

    builder = SQLBuilder(db, schema=schema, dialect=dialect)
    total_patients = _total_patients(db, builder)

    total_records_across_domains = 0
    all_eligible_patients: Set[int] = set()
    domains: List[DomainMetrics] = []

    for domain_id, domain_concepts in concepts_by_domain.items():
        try:
            ctx = builder.build_context(domain_id)
            sql, params = builder.record_count_sql(ctx, domain_concepts)
            domain_records = int(db.execute_query(sql, params).iloc[0]["total_concept_records"])

            sql, params = builder.person_ids_sql(ctx, domain_concepts)
            patients_df = db.execute_query(sql, params)
            domain_patients = {int(p) for p in patients_df["person_id"]} if not patients_df.empty else set()
        except NotFoundError as e:
            logger.warning("Error processing domain %s: %s", domain_id, e)
            continue

        total_records_across_domains += domain_records
        all_eligible_patients |= domain_patients
        domains.append(DomainMetrics(
            domain=domain_id,
            concept_count=len(domain_concepts),
            patients=domain_patients,
            record_count=domain_records,
            concept_ids=list(domain_concepts),
        ))

    return FeasibilitySnapshot(
        total_patients=total_patients,
        domains_analyzed=len(concepts_by_domain),
        domains=domains,
        total_records=total_records_across_domains,
        eligible_patients=all_eligible_patients,
    )


def _no_valid_concepts(raw_values: bool) -> pd.DataFrame:
    return pd.DataFrame({
        "metric": ["No Valid Concepts"],
        "value": pd.Series([0 if raw_values else "0"], dtype="object"),
        "interpretation": ["No concepts found in database"],
        "domain": ["N/A"],
    })


def _frame(metrics, values, interpretations, domains) -> pd.DataFrame:
    return pd.DataFrame({
        "metric": metrics,
        "value": pd.Series(values, dtype="object"),
        "interpretation": interpretations,
        "domain": domains,
    }, columns=REPORT_COLUMNS)


def _summary_frame(snap: FeasibilitySnapshot, raw_values: bool) -> pd.DataFrame:
    if raw_values:
        values = [
            snap.total_patients,
            snap.unique_patients,
            snap.total_records,
            snap.records_per_patient,
            snap.population_coverage,
            snap.domains_analyzed,
        ]
    else:
        values = [
            format_number(snap.total_patients),
            format_number(snap.unique_patients),
            format_number(snap.total_records),
            str(snap.records_per_patient),
            f"{snap.population_coverage}%",
            str(snap.domains_analyzed),
        ]
    return _frame(
        [
            "Total Patients",
            "Eligible Patients",
            "Total Target Records",
            "Records per Patient",
            "Population Coverage (%)",
            "Domains Analyzed",
        ],
        values,
        [
            "Total patients available in the database",
            "Patients who have ANY of your target medical concepts",
            "Number of medical records found across all domains",
            "Average medical records per eligible patient",
            "What percentage of all patients are eligible for your study",
            "Number of different medical domains analyzed",
        ],
        ["Summary"] * 6,
    )


def _breakdown_frame(snap: FeasibilitySnapshot, raw_values: bool) -> pd.DataFrame:
    frames = []
    for m in snap.domains:
        coverage = percent(m.patient_count, snap.total_patients, 3)
        if raw_values:
            values = [m.concept_count, m.patient_count, m.record_count, coverage]
        else:
            values = [str(m.concept_count), format_number(m.patient_count),
                      format_number(m.record_count), f"{coverage}%"]
        frames.append(_frame(
            [
                f"{m.domain} - Concepts",
                f"{m.domain} - Patients",
                f"{m.domain} - Records",
                f"{m.domain} - Coverage (%)",
            ],
            values,
            [
                f"Number of concepts analyzed in {m.domain} domain",
                f"Patients with {m.domain} concepts",
                f"Records found in {m.domain} domain",
                f"Population coverage for {m.domain} domain",
            ],
            [m.domain] * 4,
        ))
    if not frames:
        return _frame([], [], [], [])
    return pd.concat(frames, ignore_index=True)


def _covariate_frame(snap: FeasibilitySnapshot, covariate_funcs, db, schema, dialect,
                     raw_values: bool) -> pd.DataFrame:
    if not snap.eligible_patients:
        return _frame([], [], [], [])

    cov = apply_covariates(sorted(snap.eligible_patients), covariate_funcs, db, schema=schema, dialect=dialect)
    metrics, values, notes = [], [], []
    for col in [c for c in cov.columns if c != "person_id"]:
        counts = cov.groupby(col).size().sort_index()
        keys = counts.index.tolist()
        names = category_names(keys, col, db, schema=schema, dialect=dialect)
        cov_name = strip_concept_suffix(col)
        for raw, n in zip(keys, counts.tolist()):
            category = names[raw]
            metrics.append(f"{cov_name} - {category}")
            values.append(int(n) if raw_values else format_number(int(n)))
            notes.append(f"Eligible patients with {cov_name} {category}")
    return _frame(metrics, values, notes, ["Covariate"] * len(metrics))


def generate_summary(db, concept_set: Iterable[int], covariate_funcs: Sequence[Callable] = (),
                     schema: str = "main", dialect: str = "postgresql",
                     raw_values: bool = False) -> pd.DataFrame:
    """Six population-level metrics tagged ``domain="Summary"``.

    ``covariate_funcs`` is accepted for signature parity with the full report;
    the summary itself is not stratified.
    """
    snap = collect_feasibility(db, concept_set, schema=schema, dialect=dialect)
    if snap is None:
        return _no_valid_concepts(raw_values)
    return _summary_frame(snap, raw_values)


def generate_domain_breakdown(db, concept_set: Iterable[int], covariate_funcs: Sequence[Callable] = (),
                              schema: str = "main", dialect: str = "postgresql",
                              raw_values: bool = False) -> pd.DataFrame:
    snap = collect_feasibility(db, concept_set, schema=schema, dialect=dialect)
    if snap is None:
        return _no_valid_concepts(raw_values)
    return _breakdown_frame(snap, raw_values)


def generate_feasibility_report(db, concept_set: Iterable[int], covariate_funcs: Sequence[Callable] = (),
                                schema: str = "main", dialect: str = "postgresql",
                                raw_values: bool = False) -> pd.DataFrame:
    """Summary block, per-domain breakdown and, with covariates, eligible
    patients per covariate category (``domain="Covariate"``)."""
    snap = collect_feasibility(db, concept_set, schema=schema, dialect=dialect)
    if snap is None:
        return _no_valid_concepts(raw_values)

    blocks = [_summary_frame(snap, raw_values), _breakdown_frame(snap, raw_values)]
    covariate_funcs = list(covariate_funcs or [])
    if covariate_funcs:
        blocks.append(_covariate_frame(snap, covariate_funcs, db, schema, dialect, raw_values))
    return pd.concat([b for b in blocks if not b.empty], ignore_index=True)
