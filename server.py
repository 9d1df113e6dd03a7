from __future__ import annotations

import os
import logging
import threading
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from errors import InvalidArgument, NotFoundError
from main import FeasibilitySystem, load_config

logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s - %(message)s')
log = logging.getLogger("server")


class ConceptSetReq(BaseModel):
    concept_set: List[int]
    covariates: List[str] = Field(default_factory=list)
    raw_values: bool = False


class ProfileReq(BaseModel):
    covariates: List[str]
    cohort_definition_id: Optional[int] = None
    person_ids: Optional[List[int]] = None


class TableResponse(BaseModel):
    columns: List[str]
    rows: List[Dict[str, Any]]


def _records(df: pd.DataFrame) -> TableResponse:
    clean = df.astype(object).where(pd.notna(df), None)
    return TableResponse(columns=[str(c) for c in df.columns], rows=clean.to_dict(orient="records"))


app = FastAPI(title="OMOP CDM Feasibility API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"https?://.*",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SYSTEM: Optional[FeasibilitySystem] = None
# one connector per process; connectors are not thread-safe
_DB_LOCK = threading.Lock()


def _run(fn, *args, **kwargs):
    if not SYSTEM:
        raise HTTPException(status_code=503, detail="server initializing")
    try:
        with _DB_LOCK:
            return fn(*args, **kwargs)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/health")
def health():
    return {"ok": True, "ready": SYSTEM is not None}


@app.post("/distribution", response_model=TableResponse)
def distribution(req: ConceptSetReq):
    return _records(_run(lambda: SYSTEM.distribution(req.concept_set, req.covariates)))


@app.post("/feasibility/summary", response_model=TableResponse)
def feasibility_summary(req: ConceptSetReq):
    return _records(_run(lambda: SYSTEM.summary(req.concept_set, raw_values=req.raw_values)))


@app.post("/feasibility/breakdown", response_model=TableResponse)
def feasibility_breakdown(req: ConceptSetReq):
    return _records(_run(lambda: SYSTEM.breakdown(req.concept_set, raw_values=req.raw_values)))


@app.post("/feasibility/report", response_model=TableResponse)
def feasibility_report(req: ConceptSetReq):
    return _records(_run(lambda: SYSTEM.report(req.concept_set, req.covariates, raw_values=req.raw_values)))


@app.post("/profiles/individual", response_model=Dict[str, TableResponse])
def profiles_individual(req: ProfileReq):
    tables = _run(lambda: SYSTEM.individual_profiles(req.covariates, req.cohort_definition_id, req.person_ids))
    return {name: _records(df) for name, df in tables.items()}


@app.post("/profiles/cartesian", response_model=TableResponse)
def profiles_cartesian(req: ProfileReq):
    return _records(_run(lambda: SYSTEM.cartesian_profiles(req.covariates, req.cohort_definition_id, req.person_ids)))


@app.get("/concepts/{concept_id}", response_model=TableResponse)
def concept(concept_id: int):
    df = _run(lambda: SYSTEM.concept(concept_id))
    if df.empty:
        raise HTTPException(status_code=404, detail=f"No concept found with ID: {concept_id}")
    return _records(df)


@app.on_event("startup")
def _startup():
    global SYSTEM
    try:
        cfg = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
        SYSTEM = FeasibilitySystem(cfg)
        SYSTEM.db_connector.connect()
        log.info("Server up. dialect=%s, schema=%s", SYSTEM.dialect, SYSTEM.schema)
    except Exception as e:
        SYSTEM = None
        log.warning("FeasibilitySystem init failed: %s", e)


@app.on_event("shutdown")
def _shutdown():
    if SYSTEM and getattr(SYSTEM, "db_connector", None):
        SYSTEM.db_connector.close()
        log.info("DB closed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=True)
