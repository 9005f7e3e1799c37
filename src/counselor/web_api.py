from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .controller import FailureCode
from .engine import CounselorEngine, build_engine
from .errors import ContextUnavailable, StoreError
from .models import EntryContext, EntryMode

FAILURE_STATUS = {
    FailureCode.QUOTA_EXCEEDED: 429,
    FailureCode.CONTEXT_UNAVAILABLE: 503,
    FailureCode.PROVIDER_ERROR: 502,
}


class EntryBody(BaseModel):
    mode: EntryMode = EntryMode.GENERAL
    trigger: str = "message"
    initial_query: Optional[str] = None
    is_new_user: bool = False
    days_since_last_session: Optional[int] = None


class ChatBody(BaseModel):
    student_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    entry: EntryBody = Field(default_factory=EntryBody)


class StudentBody(BaseModel):
    student_id: str = Field(min_length=1)


class ParseBody(BaseModel):
    student_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    mode: EntryMode = EntryMode.ONBOARDING


def create_app(engine: Optional[CounselorEngine] = None) -> FastAPI:
    engine = engine or build_engine()
    app = FastAPI(title="Counselor Engine API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine

    @app.exception_handler(ContextUnavailable)
    @app.exception_handler(StoreError)
    async def _store_unavailable(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": FailureCode.CONTEXT_UNAVAILABLE.value, "detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, bool]:
        return {"ok": True}

    @app.post("/chat")
    def chat(body: ChatBody) -> JSONResponse:
        entry = EntryContext(
            mode=body.entry.mode,
            trigger=body.entry.trigger,
            initial_query=body.entry.initial_query,
            is_new_user=body.entry.is_new_user,
            days_since_last_session=body.entry.days_since_last_session,
        )
        outcome = engine.chat(body.student_id, body.message, entry)
        status = FAILURE_STATUS.get(outcome.failure, 200)
        return JSONResponse(status_code=status, content=outcome.to_dict())

    @app.post("/context/warmup")
    def warmup(body: StudentBody) -> Dict[str, Any]:
        engine.on_login(body.student_id)
        return {"ok": True, "student_id": body.student_id, "objectives": "scheduled"}

    @app.post("/conversations/end", status_code=202)
    def end_conversation(body: StudentBody) -> Dict[str, Any]:
        engine.end_conversation(body.student_id)
        return {"ok": True, "student_id": body.student_id, "summary": "scheduled"}

    @app.post("/onboarding/parse")
    def parse(body: ParseBody) -> Dict[str, Any]:
        return engine.parse_message(body.student_id, body.message, body.mode).to_dict()

    @app.get("/students/{student_id}/objectives")
    def objectives(student_id: str) -> List[Dict[str, Any]]:
        return [o.to_dict() for o in engine.objectives_for(student_id)]

    @app.get("/students/{student_id}/turns")
    def turns(student_id: str) -> List[Dict[str, Any]]:
        return engine.conversation_store.turn_log(student_id)

    return app


def main() -> None:
    try:
        import uvicorn  # type: ignore
    except ImportError:
        raise SystemExit("Please install uvicorn: pip install 'counselor-engine[serve]'")
    uvicorn.run(
        "counselor.web_api:create_app",
        factory=True,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
