"""
Memory Core - FastAPI server
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from memory_core import __version__
from memory_core.api.memory import router as memory_router
from memory_core.config.database import create_postgres_pool
from memory_core.config.settings import get_settings
from memory_core.core import MemoryCore

logger = logging.getLogger(__name__)


def create_app(core: Optional[MemoryCore] = None) -> FastAPI:
    """
    Build the app. With no core given, the lifespan connects to PostgreSQL
    and builds one from settings; tests pass an in-memory core.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = None
        if core is not None:
            app.state.memory_core = core
        else:
            pool = await create_postgres_pool()
            app.state.memory_core = MemoryCore.from_pool(pool, get_settings())
            logger.info("✅ Memory core connected to PostgreSQL")
        try:
            yield
        finally:
            if pool is not None:
                await pool.close()

    app = FastAPI(
        title="Memory Core",
        description="Per-owner personal knowledge store",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(memory_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/health")
    async def api_health():
        return {"status": "ok", "service": "memory_core"}

    return app


def main():
    import uvicorn

    load_dotenv(Path(os.getcwd()) / '.env')
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(create_app(), host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', '8000')))


if __name__ == "__main__":
    main()
