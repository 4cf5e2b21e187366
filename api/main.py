from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator
import logging

from tender_qa.errors import IndexingFailure, ServiceUnavailable
from tender_qa.main import TenderQAPipeline, build_pipeline
from tender_qa.schemas import AskResponse, Classification, LayoutMetadata, Question

logger = logging.getLogger(__name__)


class IndexBody(BaseModel):
    text: str
    layout: LayoutMetadata = Field(default_factory=LayoutMetadata)
    version: str = "1"


class IndexResult(BaseModel):
    document_id: str
    version: str
    chunk_count: int


class QuestionBody(BaseModel):
    bidder_id: str
    question: str = Field(..., min_length=1)
    classification: Classification = Classification.UNKNOWN
    document_ids: Optional[List[str]] = None

    @field_validator("classification", mode="before")
    @classmethod
    def _coerce_classification(cls, v: Any) -> Any:
        # Unknown labels from the classifier become UNKNOWN instead of a 422
        return Classification(v) if isinstance(v, str) else v


def create_app(pipeline: Optional[TenderQAPipeline] = None) -> FastAPI:
    """
    Admin surface over one pipeline. Tests pass their own pipeline in.

        uvicorn api.main:app
        uvicorn --factory api.main:create_app
    """
    app = FastAPI(title="TenderQA")
    app.add_middleware(CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_methods=["*"], allow_headers=["*"])
    app.state.pipeline = pipeline if pipeline is not None else build_pipeline()

    @app.post("/tenders/{tender_id}/documents/{document_id}/index", response_model=IndexResult)
    def index_document(tender_id: str, document_id: str, body: IndexBody):
        # Sync handler: FastAPI runs it in the threadpool, off the event loop
        try:
            count = app.state.pipeline.index_document(
                tender_id, document_id, body.text, body.layout, body.version,
            )
        except IndexingFailure as exc:
            raise HTTPException(status_code=422, detail=exc.reason)
        return IndexResult(document_id=document_id, version=body.version, chunk_count=count)

    @app.post("/tenders/{tender_id}/questions", response_model=AskResponse)
    async def ask_question(tender_id: str, body: QuestionBody):
        try:
            return await app.state.pipeline.ask(
                tender_id, body.bidder_id, body.question,
                body.classification, body.document_ids,
            )
        except ServiceUnavailable as exc:
            logger.error("ask failed: %s", exc)
            raise HTTPException(status_code=503, detail=str(exc))

    @app.get("/questions/{question_id}", response_model=Question)
    def get_question(question_id: str):
        question = app.state.pipeline.get_question(question_id)
        if question is None:
            raise HTTPException(status_code=404, detail="question not found")
        return question

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


def __getattr__(name: str) -> Any:
    # `app` is built from the environment config on first access, so
    # importing this module (tests, create_app users) builds nothing
    if name == "app":
        app = create_app()
        globals()["app"] = app
        return app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
