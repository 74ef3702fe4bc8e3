import logging
import os
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)

from context_fields.db_helpers import get_session_factory
from context_fields.field_registry import load_field_registry
from context_fields.field_service import FieldService
from context_fields.miniapp_catalog import load_miniapp_catalog
from context_fields.stores import ContextStore, OverrideStore

logger = logging.getLogger("context_fields.server")


class FieldRequest(BaseModel):
    type: str
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None


def _default_service_factory() -> Callable[[], FieldService]:
    # registry and mapping tables are loaded once; stores are bound per request
    registry = load_field_registry()
    catalog = load_miniapp_catalog(registry=registry)

    def factory() -> FieldService:
        sf = get_session_factory()
        return FieldService(registry, catalog, ContextStore(sf), OverrideStore(sf))

    return factory


def create_app(service_factory: Optional[Callable[[], FieldService]] = None) -> FastAPI:
    factory = service_factory or _default_service_factory()
    app = FastAPI(title="context-fields")

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/fields")
    async def handle_fields(request: FieldRequest):
        try:
            service = factory()
            return await service.process_request(request.model_dump())
        except Exception as e:
            logger.exception("Unhandled error for request type %s", request.type)
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
