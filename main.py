# main.py
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import date
from functools import lru_cache
from typing import Optional

import fire
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config import load_config
from db import init_db, make_engine, seed_catalog
from errors import PipelineError
from ingest.lab_result import LabResultSubmission
from pipeline import ResultPipeline, build_pipeline

config = load_config()

# Configure logger
logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@lru_cache
def get_engine():
    return make_engine(config.database_url)


def bootstrap():
    """
    Create tables and seed the catalog.
    Runs on every startup; seeding is skipped when the catalog exists.
    """
    engine = get_engine()
    init_db(engine)
    seed_catalog(engine, config.catalog_csv)
    return engine


@lru_cache
def get_pipeline() -> ResultPipeline:
    return build_pipeline(config, get_engine())


@asynccontextmanager
async def lifespan(app: FastAPI):
    bootstrap()
    yield


# Initialize FastAPI app
app = FastAPI(title="CKD Result Pipeline", lifespan=lifespan)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def read_root():
    return {"CKD pipeline": "Live. POST to /patient-lab-results to record a result."}


@app.post("/patient-lab-results", status_code=201)
async def record_lab_result(submission: LabResultSubmission, pipeline: ResultPipeline = Depends(get_pipeline)):
    logger.info(f"Lab result submitted for patient {submission.patient_id}, test {submission.lab_test_id}")
    outcome = await pipeline.submit(submission)
    return outcome.to_dict()


@app.get("/doctors/{doctor_id}/notifications")
def list_notifications(doctor_id: int, pipeline: ResultPipeline = Depends(get_pipeline)):
    store = pipeline.store
    store.get_doctor(doctor_id)
    notifications = store.notifications_for_doctor(doctor_id)
    return {
        "notifications": [n.model_dump() for n in notifications],
        "critical_count": store.count_unread_critical(doctor_id),
    }


def init():
    bootstrap()
    return "Database ready."


def seed(csv_path: Optional[str] = None):
    engine = get_engine()
    init_db(engine)
    inserted = seed_catalog(engine, csv_path or config.catalog_csv)
    return f"Inserted {inserted} lab tests."


def submit(patient_id: int, doctor_id: int, lab_test_id: int, value, result_date: Optional[str] = None):
    """Record one lab result from the command line and print the outcome."""
    bootstrap()
    submission = LabResultSubmission(
        patient_id=patient_id,
        doctor_id=doctor_id,
        lab_test_id=lab_test_id,
        result_value=value,
        result_date=date.fromisoformat(result_date) if result_date else date.today(),
    )
    try:
        outcome = asyncio.run(get_pipeline().submit(submission))
    except PipelineError as e:
        logger.error(f"Submission failed: {e.message}")
        return json.dumps(e.to_dict(), ensure_ascii=False, indent=2)
    return json.dumps(outcome.to_dict(), default=str, ensure_ascii=False, indent=2)


def serve(port: int = 8000, host: str = "0.0.0.0"):
    uvicorn.run(app, host=host, port=port)


# CLI entrypoint using python-fire
def cli():
    fire.Fire({
        "init": init,
        "seed": seed,
        "submit": submit,
        "serve": serve,
    })


# Entry point for CLI or server
if __name__ == "__main__":
    cli()
