import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import chat, mcp
from .config import settings
from .services.chat_model import ChatConfigError
from .services.chat_storage import ChatSessionNotFoundError, ChatStorageError
from .services.json_store import JsonStoreError
from .services.registry import (
    NegotiationInProgressError,
    RegistryError,
    ServerNotFoundError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting MCP Chat Console API")
    if not settings.llm_configured:
        logger.warning("GEMINI_API_KEY is not set; /api/chat/stream will return 500")
    yield
    logger.info("Shutting down MCP Chat Console API")


app = FastAPI(
    title="MCP Chat Console API",
    description="Backend API for streaming model chat and MCP server discovery",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(chat.router)
app.include_router(mcp.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "MCP Chat Console API",
        "version": __version__,
        "status": "running",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Global exception handlers


@app.exception_handler(ServerNotFoundError)
async def server_not_found_handler(request: Request, exc: ServerNotFoundError):
    """Handle lookups of unknown MCP servers."""
    logger.warning(f"Server not found: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={
            "error_code": "SERVER_NOT_FOUND",
            "message": str(exc),
            "detail": "The requested MCP server is not registered.",
        },
    )


@app.exception_handler(NegotiationInProgressError)
async def negotiation_in_progress_handler(request: Request, exc: NegotiationInProgressError):
    """Handle a second connect issued while one is still running."""
    logger.warning(f"Negotiation in progress: {exc}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "error_code": "NEGOTIATION_IN_PROGRESS",
            "message": str(exc),
            "detail": "A connection attempt for this server is already running. Please wait for it to finish.",
        },
    )


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError):
    """Handle other server registry errors."""
    logger.error(f"Registry error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error_code": "REGISTRY_ERROR",
            "message": str(exc),
            "detail": "The server registry rejected the request. Please check the server details.",
        },
    )


@app.exception_handler(ChatSessionNotFoundError)
async def chat_session_not_found_handler(request: Request, exc: ChatSessionNotFoundError):
    """Handle lookups of unknown chat sessions."""
    logger.warning(f"Chat session not found: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={
            "error_code": "CHAT_SESSION_NOT_FOUND",
            "message": str(exc),
            "detail": "The requested chat session does not exist.",
        },
    )


@app.exception_handler(ChatStorageError)
async def chat_storage_error_handler(request: Request, exc: ChatStorageError):
    """Handle chat history errors."""
    logger.error(f"Chat storage error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error_code": "CHAT_STORAGE_ERROR",
            "message": str(exc),
            "detail": "Failed to update the chat history.",
        },
    )


@app.exception_handler(ChatConfigError)
async def chat_config_error_handler(request: Request, exc: ChatConfigError):
    """Handle missing model configuration."""
    logger.error(f"Chat configuration error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "CHAT_CONFIG_ERROR",
            "message": str(exc),
            "detail": "The chat model is not configured on the server.",
        },
    )


@app.exception_handler(JsonStoreError)
async def json_store_error_handler(request: Request, exc: JsonStoreError):
    """Handle failures while persisting state."""
    logger.error(f"Storage error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "STORAGE_ERROR",
            "message": str(exc),
            "detail": "Failed to persist data. Please check the data directory permissions.",
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    logger.warning(f"Validation error: {exc}")
    errors = exc.errors()
    error_messages = []

    for error in errors:
        field = " -> ".join(str(loc) for loc in error["loc"])
        message = error["msg"]
        error_messages.append(f"{field}: {message}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "detail": "; ".join(error_messages),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Handle all other unexpected exceptions.

    Logs detailed error information while returning a user-friendly message.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "detail": "The server encountered an unexpected error. Please try again later or contact support if the problem persists.",
        },
    )
