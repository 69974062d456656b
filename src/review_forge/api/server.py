"""Review Forge API Server.

FastAPI server receiving pull request service hooks and running reviews.

Usage:
    review-forge --port 8780

    # Or with uvicorn directly:
    uvicorn review_forge.api.server:app --host 0.0.0.0 --port 8780
"""

import argparse
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI

from review_forge import __version__
from review_forge.api.routes import router, set_orchestrator
from review_forge.config import ServiceConfig
from review_forge.errors import ConfigurationError
from review_forge.review.orchestrator import ReviewOrchestrator, build_orchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def create_app(orchestrator: ReviewOrchestrator | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator; built from the environment when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting Review Forge API Server...")
        if orchestrator is not None:
            set_orchestrator(orchestrator)
        else:
            config = ServiceConfig.from_env()
            logger.info(f"Model: {config.completion_model}")
            logger.info(f"Vector backend: {config.vector_backend}")
            try:
                set_orchestrator(build_orchestrator(config))
                logger.info("Review orchestrator initialized")
            except ConfigurationError as e:
                # Keep serving /health; review routes answer 503
                logger.error(f"Failed to initialize review orchestrator: {e}")

        yield

        logger.info("Shutting down Review Forge API Server...")
        set_orchestrator(None)

    app = FastAPI(
        title="Review Forge API",
        description="Context-aware AI review for pull requests",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


# Create the app instance
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8780, reload: bool = False) -> None:
    """Run the Review Forge API server.

    Args:
        host: Host to bind to
        port: Port to listen on
        reload: Enable auto-reload for development
    """
    logger.info(f"Starting server on http://{host}:{port}")
    uvicorn.run(
        "review_forge.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Review Forge API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8780, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()
    run_server(host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
