"""
FastAPI server for the fund retrieval core
Exposes retrieval plus read-only scheme/record lookups for the answer layer
"""
import time
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Load .env before reading configuration (GEMINI_API_KEY etc.)
load_dotenv()

from config_loader import Config, get_config
from rag_retriever import RetrievalOrchestrator
from retrieval_errors import RetrievalError, format_error_response
from structured_logger import configure_logger


class RetrieveRequest(BaseModel):
    query: str
    limit: Optional[int] = Field(default=None, ge=0)


def get_orchestrator(request: Request) -> RetrievalOrchestrator:
    """FastAPI dependency: the orchestrator created at startup"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None or not orchestrator.is_initialized:
        raise HTTPException(status_code=503, detail="Retriever is initializing")
    return orchestrator


def create_app(orchestrator: Optional[RetrievalOrchestrator] = None,
               config: Optional[Config] = None) -> FastAPI:
    """
    Build the API application

    Args:
        orchestrator: Orchestrator to serve (built from config at startup when None)
        config: Config instance (global config when None)

    Returns:
        FastAPI app
    """
    config = config or get_config()
    logger = configure_logger(config.log_level, config.log_file)

    app = FastAPI(title="Mutual Fund Retrieval API")
    app.state.config = config
    app.state.orchestrator = orchestrator

    allowed_origins = config.allowed_origins
    if config.is_production and "*" in allowed_origins:
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(RetrievalError)
    async def retrieval_error_handler(request: Request, exc: RetrievalError):
        error_response = format_error_response(exc, {'endpoint': str(request.url.path)},
                                               include_debug=not config.is_production)
        logger.log_error(exc, {'endpoint': str(request.url.path)})
        return JSONResponse(status_code=error_response['status_code'], content=error_response)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all so clients always get a JSON body"""
        error_response = format_error_response(exc, {
            'endpoint': str(request.url.path),
            'method': request.method
        }, include_debug=not config.is_production)
        logger.log_error(exc, {'endpoint': str(request.url.path)})
        return JSONResponse(status_code=500, content=error_response)

    @app.on_event("startup")
    async def startup_event():
        if app.state.orchestrator is None:
            app.state.orchestrator = RetrievalOrchestrator.from_config(config)
        logger.info("Initializing retriever...", event="system_startup")
        # CorpusUnavailable propagates and stops the server
        await app.state.orchestrator.initialize()
        logger.info("Retriever ready", event="system_startup",
                    **app.state.orchestrator.status())

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down gracefully", event="system_shutdown")
        if app.state.orchestrator is not None:
            await app.state.orchestrator.close()

    @app.get("/")
    async def root():
        return {
            "status": "online",
            "service": "Mutual Fund Retrieval API",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health(request: Request):
        orchestrator = getattr(request.app.state, "orchestrator", None)
        status = orchestrator.status() if orchestrator is not None else {'initialized': False}
        if not status.get('initialized'):
            health_status = "unavailable"
        elif status.get('vector_search'):
            health_status = "healthy"
        else:
            health_status = "degraded"
        return JSONResponse(
            status_code=503 if health_status == "unavailable" else 200,
            content={
                "status": health_status,
                "retriever": status,
                "timestamp": datetime.now().isoformat()
            })

    @app.post("/api/retrieve")
    async def retrieve(retrieve_request: RetrieveRequest,
                       orchestrator: RetrievalOrchestrator = Depends(get_orchestrator)):
        with logger.request_context() as request_id:
            start_time = time.time()
            result = await orchestrator.retrieve(retrieve_request.query, retrieve_request.limit)

        response = result.to_dict()
        response["request_id"] = request_id
        response["response_time_seconds"] = round(time.time() - start_time, 3)
        return response

    @app.get("/api/schemes")
    async def list_schemes(orchestrator: RetrievalOrchestrator = Depends(get_orchestrator)):
        schemes = []
        for entity_id in sorted(orchestrator.list_entities()):
            records = orchestrator.get_records_for_entity(entity_id)
            facts = next((r for r in records if r.category_tag == 'facts_performance'), records[0])
            schemes.append({
                "scheme_id": entity_id,
                "scheme_name": facts.entity_display_name,
                "category": facts.structured_fields.get('category', 'N/A'),
                "source_url": facts.source_ref,
                "sections": [r.category_tag for r in records],
            })
        return {"count": len(schemes), "schemes": schemes}

    @app.get("/api/schemes/{entity_id}")
    async def get_scheme(entity_id: str,
                         orchestrator: RetrievalOrchestrator = Depends(get_orchestrator)):
        records = orchestrator.get_records_for_entity(entity_id)
        if not records:
            raise HTTPException(status_code=404, detail="Scheme not found")
        return {
            "scheme_id": entity_id,
            "scheme_name": records[0].entity_display_name,
            "source_url": records[0].source_ref,
            "records": [record.to_dict() for record in records],
        }

    @app.get("/api/records/{record_id}")
    async def get_record(record_id: str,
                         orchestrator: RetrievalOrchestrator = Depends(get_orchestrator)):
        record = orchestrator.get_record(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return record.to_dict()

    return app


if __name__ == "__main__":
    import uvicorn
    config = get_config()
    uvicorn.run(create_app(config=config), host=config.server_host, port=config.server_port)
