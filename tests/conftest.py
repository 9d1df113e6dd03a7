"""Pytest fixtures: a small in-memory OMOP CDM in DuckDB."""

import duckdb
import pytest

from db_connector import DuckDBConnector

CONCEPTS = [
    (0, "No matching concept", "Metadata", "None", "Undefined", None),
    (8507, "MALE", "Gender", "Gender", "Gender", "S"),
    (8532, "FEMALE", "Gender", "Gender", "Gender", "S"),
    (8527, "White", "Race", "Race", "Race", "S"),
    (8516, "Black or African American", "Race", "Race", "Race", "S"),
    (38003563, "Hispanic or Latino", "Ethnicity", "Ethnicity", "Ethnicity", "S"),
    (38003564, "Not Hispanic or Latino", "Ethnicity", "Ethnicity", "Ethnicity", "S"),
    (201826, "Type 2 diabetes mellitus", "Condition", "SNOMED", "Clinical Finding", "S"),
    (320128, "Essential hypertension", "Condition", "SNOMED", "Clinical Finding", "S"),
    (1503297, "Metformin", "Drug", "RxNorm", "Ingredient", "S"),
    (4336464, "Coronary artery bypass graft", "Procedure", "SNOMED", "Procedure", "S"),
    (3004410, "Hemoglobin A1c total in Blood", "Measurement", "LOINC", "Lab Test", "S"),
    (4275495, "Tobacco user", "Observation", "SNOMED", "Clinical Finding", "S"),
]

# person_id, gender, year_of_birth, race, ethnicity
PERSONS = [
    (1, 8507, 1960, 8527, 38003564),
    (2, 8532, 1975, 8527, 38003564),
    (3, 8507, 1980, 8516, 38003563),
    (4, 8532, 1990, 8516, 38003564),
    (5, 8507, 2000, 8527, 38003564),
    (6, 8532, 1955, 8527, 38003563),
    (7, 8507, 1985, 8516, 38003564),
    (8, 8532, 1970, 8527, 38003564),
    (9, 8507, 1965, 8527, 38003564),
    (10, 8532, 1995, 8516, 38003564),
]

CONDITIONS = [(1, 1, 201826), (2, 1, 201826), (3, 2, 201826), (4, 3, 320128), (5, 1, 320128)]
DRUGS = [(1, 1, 1503297), (2, 4, 1503297), (3, 4, 1503297), (4, 4, 1503297)]
PROCEDURES = [(1, 5, 4336464)]
MEASUREMENTS = [(1, 6, 3004410), (2, 6, 3004410)]
# definition 7 has a row but no subject
COHORTS = [(1, 1), (1, 2), (1, 3), (2, 4), (2, 5), (7, None)]


def build_cdm(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("""
        CREATE TABLE concept (concept_id INTEGER, concept_name VARCHAR, domain_id VARCHAR,
                              vocabulary_id VARCHAR, concept_class_id VARCHAR, standard_concept VARCHAR)
    """)
    conn.executemany("INSERT INTO concept VALUES (?, ?, ?, ?, ?, ?)", CONCEPTS)

    conn.execute("""
        CREATE TABLE person (person_id INTEGER, gender_concept_id INTEGER, year_of_birth INTEGER,
                             race_concept_id INTEGER, ethnicity_concept_id INTEGER)
    """)
    conn.executemany("INSERT INTO person VALUES (?, ?, ?, ?, ?)", PERSONS)

    conn.execute("""
        CREATE TABLE condition_occurrence (condition_occurrence_id INTEGER, person_id INTEGER,
                                           condition_concept_id INTEGER, condition_start_date DATE)
    """)
    conn.executemany("INSERT INTO condition_occurrence VALUES (?, ?, ?, DATE '2020-01-01')", CONDITIONS)

    conn.execute("""
        CREATE TABLE drug_exposure (drug_exposure_id INTEGER, person_id INTEGER,
                                    drug_concept_id INTEGER, drug_exposure_start_date DATE)
    """)
    conn.executemany("INSERT INTO drug_exposure VALUES (?, ?, ?, DATE '2020-02-01')", DRUGS)

    conn.execute("""
        CREATE TABLE procedure_occurrence (procedure_occurrence_id INTEGER, person_id INTEGER,
                                           procedure_concept_id INTEGER, procedure_date DATE)
    """)
    conn.executemany("INSERT INTO procedure_occurrence VALUES (?, ?, ?, DATE '2020-03-01')", PROCEDURES)

    conn.execute("""
        CREATE TABLE measurement (measurement_id INTEGER, person_id INTEGER,
                                  measurement_concept_id INTEGER, measurement_date DATE)
    """)
    conn.executemany("INSERT INTO measurement VALUES (?, ?, ?, DATE '2020-04-01')", MEASUREMENTS)

    conn.execute("""
        CREATE TABLE cohort (cohort_definition_id INTEGER, subject_id INTEGER,
                             cohort_start_date DATE, cohort_end_date DATE)
    """)
    conn.executemany(
        "INSERT INTO cohort VALUES (?, ?, DATE '2020-01-01', DATE '2020-12-31')", COHORTS)


@pytest.fixture(scope="session")
def db() -> DuckDBConnector:
    """DuckDB connector over the test CDM (schema ``main``, no observation table)."""
    conn = duckdb.connect(":memory:")
    build_cdm(conn)
    connector = DuckDBConnector(connection=conn)
    yield connector
    connector.close()


@pytest.fixture
def opts() -> dict:
    return {"schema": "main", "dialect": "duckdb"}
