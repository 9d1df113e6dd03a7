import os
import argparse
import logging
from typing import Dict, List, Optional, Sequence

import pandas as pd
import yaml
from pydantic import BaseModel, Field

from cohort_profiler import create_cartesian_profiles, create_individual_profiles
from covariates import covariates_by_name
from db_connector import load_connector
from feasibility import (
    analyze_concept_distribution,
    generate_domain_breakdown,
    generate_feasibility_report,
    generate_summary,
)
from reports import lookup_concept

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.environ.get("CONFIG_PATH", os.path.join(BASE_DIR, "config.yaml"))


class DatabaseConfig(BaseModel):
    dialect: str = "postgresql"
    schema_name: str = Field("public", alias="schema")
    postgresql: Optional[dict] = None
    duckdb: Optional[dict] = None

    model_config = {"populate_by_name": True}


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    database: DatabaseConfig
    logging: LoggingConfig = LoggingConfig()


def load_config(config_path: str = CONFIG_PATH) -> AppConfig:
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not raw.get("database"):
        raise ValueError("Config file has no 'database' section.")
    return AppConfig(**raw)


class FeasibilitySystem:
    def __init__(self, config: AppConfig, db_connector=None):
        self.config = config
        self.schema = config.database.schema_name
        self.dialect = config.database.dialect
        self.db_connector = db_connector or load_connector(config.database.model_dump(by_alias=True))
        logger.info(f"Feasibility system ready: dialect={self.dialect}, schema={self.schema}")

    @classmethod
    def from_config_file(cls, config_path: str = CONFIG_PATH) -> "FeasibilitySystem":
        return cls(load_config(config_path))

    def _opts(self) -> dict:
        return {"schema": self.schema, "dialect": self.dialect}

    def distribution(self, concept_set: Sequence[int], covariates: Sequence[str] = ()) -> pd.DataFrame:
        return analyze_concept_distribution(self.db_connector, concept_set,
                                            covariate_funcs=covariates_by_name(covariates), **self._opts())

    def summary(self, concept_set: Sequence[int], raw_values: bool = False) -> pd.DataFrame:
        return generate_summary(self.db_connector, concept_set, raw_values=raw_values, **self._opts())

    def breakdown(self, concept_set: Sequence[int], raw_values: bool = False) -> pd.DataFrame:
        return generate_domain_breakdown(self.db_connector, concept_set, raw_values=raw_values, **self._opts())

    def report(self, concept_set: Sequence[int], covariates: Sequence[str] = (),
               raw_values: bool = False) -> pd.DataFrame:
        return generate_feasibility_report(self.db_connector, concept_set,
                                           covariate_funcs=covariates_by_name(covariates),
                                           raw_values=raw_values, **self._opts())

    def individual_profiles(self, covariates: Sequence[str], cohort_definition_id: Optional[int] = None,
                            person_ids: Optional[List[int]] = None) -> Dict[str, pd.DataFrame]:
        cohort_df = pd.DataFrame({"person_id": person_ids}) if person_ids is not None else None
        return create_individual_profiles(cohort_definition_id=cohort_definition_id, cohort_df=cohort_df,
                                          db=self.db_connector, covariate_funcs=covariates_by_name(covariates),
                                          **self._opts())

    def cartesian_profiles(self, covariates: Sequence[str], cohort_definition_id: Optional[int] = None,
                           person_ids: Optional[List[int]] = None) -> pd.DataFrame:
        cohort_df = pd.DataFrame({"person_id": person_ids}) if person_ids is not None else None
        return create_cartesian_profiles(cohort_definition_id=cohort_definition_id, cohort_df=cohort_df,
                                         db=self.db_connector, covariate_funcs=covariates_by_name(covariates),
                                         **self._opts())

    def concept(self, concept_id: int) -> pd.DataFrame:
        return lookup_concept(self.db_connector, concept_id, **self._opts())


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description="OMOP CDM feasibility analysis")
    parser.add_argument("--config", default=CONFIG_PATH, help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    for name in ("distribution", "summary", "breakdown", "report"):
        p = sub.add_parser(name)
        p.add_argument("concepts", nargs="+", type=int, help="OMOP concept IDs")
        p.add_argument("-c", "--covariates", nargs="*", default=[], help="gender, race, ethnicity, age_group")
        p.add_argument("--raw", action="store_true", help="Keep numeric values unformatted")

    p = sub.add_parser("profile")
    p.add_argument("-c", "--covariates", nargs="+", required=True)
    p.add_argument("--cohort-id", type=int)
    p.add_argument("--person-ids", nargs="*", type=int)
    p.add_argument("--cartesian", action="store_true")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    config = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    system = FeasibilitySystem(config)
    system.db_connector.connect()

    try:
        if args.command == "distribution":
            print(system.distribution(args.concepts, args.covariates).to_string(index=False))
        elif args.command == "summary":
            print(system.summary(args.concepts, raw_values=args.raw).to_string(index=False))
        elif args.command == "breakdown":
            print(system.breakdown(args.concepts, raw_values=args.raw).to_string(index=False))
        elif args.command == "report":
            print(system.report(args.concepts, args.covariates, raw_values=args.raw).to_string(index=False))
        elif args.command == "profile":
            if args.cartesian:
                print(system.cartesian_profiles(args.covariates, args.cohort_id, args.person_ids).to_string(index=False))
            else:
                for name, table in system.individual_profiles(args.covariates, args.cohort_id, args.person_ids).items():
                    print(f"\n[{name}]")
                    print(table.to_string(index=False))
    finally:
        system.db_connector.close()


if __name__ == "__main__":
    main()
