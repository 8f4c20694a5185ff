# backend/medicheck/main.py
import asyncio
import logging
from typing import List

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medicheck import db
from medicheck.schemas import AnalysisResult, AnalyzeRequest, DrugInfo, DrugSearchResult, HistoryEntry
from medicheck.services.narrative import NarrativeUnavailable
from medicheck.services.normalize import search_catalog
from medicheck.services.orchestrator import (
    ANALYSIS_FAILED_MESSAGE,
    AnalysisFailed,
    InputValidationError,
    InteractionOrchestrator,
)

log = logging.getLogger("uvicorn.error")

app = FastAPI(title="MediCheck Interaction API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Built once; the knowledge base inside is read-only and shared by every request.
orchestrator = InteractionOrchestrator()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.post("/analyze", response_model=AnalysisResult)
async def route_analyze(payload: AnalyzeRequest):
    """
    payload example:
    {"drugs": ["Aspirin", "Warfarin"]}
    """
    try:
        result = await orchestrator.analyze(payload.drugs)
    except InputValidationError as e:
        return _error(400, str(e))
    except AnalysisFailed as e:
        return _error(502, str(e))
    except Exception:
        log.exception("Unexpected error in /analyze")
        return _error(500, ANALYSIS_FAILED_MESSAGE)

    # Only the input list is remembered, and only for successful runs
    try:
        await asyncio.to_thread(db.record_check, [d.strip() for d in payload.drugs if d.strip()])
    except Exception as e:
        log.error("Failed to save history: %s", e)

    return result


@app.get("/drugs/search", response_model=List[DrugSearchResult])
async def route_search(q: str = Query(..., description="Partial drug name"), limit: int = Query(10, ge=1, le=25)):
    return await asyncio.to_thread(search_catalog, q, limit)


@app.get("/drugs/info", response_model=DrugInfo)
async def route_drug_info(name: str = Query(...)):
    name = name.strip()
    if not name:
        return _error(400, "Drug name is required")
    try:
        return await orchestrator.narrative.describe_drug(name)
    except NarrativeUnavailable as e:
        log.error("Drug info failed for %s: %s", name, e)
        return _error(502, "Drug information is unavailable right now, please try again.")


@app.get("/history", response_model=List[HistoryEntry])
def list_history(limit: int = Query(10, ge=1, le=10)):
    """Most recent checked drug lists, newest first."""
    return db.list_recent_checks(limit)


@app.delete("/history", status_code=204)
def clear_history():
    db.clear_history()


@app.get("/health")
def health():
    return {"status": "healthy"}


def run():
    import uvicorn

    uvicorn.run("medicheck.main:app", host="0.0.0.0", port=8000)
