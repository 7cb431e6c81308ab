import time
import os
from pathlib import Path
import sys
import argparse
import logging
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

# Add the 'src' directory to the Python path
sys.path.append(str(Path(__file__).resolve().parent.parent))

import colorlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, JSONResponse
from pydantic import BaseModel, ConfigDict

from cursor_rotator import RotatingClient
from cursor_rotator.config import GatewayConfig
from cursor_rotator.credential_manager import strip_bearer
from cursor_rotator.error_handler import NoAvailableKeysError, UnsupportedModeError
from cursor_rotator.model_definitions import ModelDefinitions
from gateway_app.request_logger import log_request_to_console
from gateway_app.detailed_logger import DetailedLogger


# --- Pydantic Models ---
class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[Dict[str, Any]]
    stream: bool = False


# --- Logging Configuration ---
class RotatorDebugFilter(logging.Filter):
    """Lets only DEBUG records from the rotation library into the debug file."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith("cursor_rotator")


def setup_logging(log_dir: Path):
    log_dir.mkdir(parents=True, exist_ok=True)

    # Console: INFO and above, colored by level
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    info_file_handler = logging.FileHandler(log_dir / "proxy.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    debug_file_handler = logging.FileHandler(log_dir / "proxy_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    debug_file_handler.addFilter(RotatorDebugFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(debug_file_handler)

    # Silence other noisy loggers by setting their level higher than root
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# --- Lifespan Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the shared RotatingClient on startup and closes it on shutdown."""
    config = getattr(app.state, "config", None) or GatewayConfig.from_env()
    app.state.config = config
    app.state.rotating_client = RotatingClient.from_config(config)
    app.state.model_definitions = ModelDefinitions()
    if config.default_checksum:
        logging.info("Using the configured default fingerprint for new credentials.")
    logging.info("RotatingClient initialized.")

    yield

    await app.state.rotating_client.close()
    logging.info("RotatingClient closed.")


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_rotating_client(request: Request) -> RotatingClient:
    """Dependency to get the rotating client instance from the app state."""
    return request.app.state.rotating_client


def get_model_definitions(request: Request) -> ModelDefinitions:
    definitions = getattr(request.app.state, "model_definitions", None)
    if definitions is None:
        definitions = request.app.state.model_definitions = ModelDefinitions()
    return definitions


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def streaming_response_wrapper(
    request: Request,
    response_stream: AsyncGenerator[str, None],
    logger: Optional[DetailedLogger] = None,
) -> AsyncGenerator[str, None]:
    """
    Relays SSE events to the client. Headers are already sent at this point,
    so any failure is reported as a final inline error event.
    """
    try:
        async for chunk_str in response_stream:
            if await request.is_disconnected():
                logging.warning("Client disconnected, stopping stream.")
                break
            yield chunk_str
            if logger and chunk_str.startswith("data:"):
                content = chunk_str[len("data:"):].strip()
                if content != "[DONE]":
                    try:
                        await logger.log_stream_chunk(json.loads(content))
                    except json.JSONDecodeError:
                        pass
    except NoAvailableKeysError as e:
        logging.warning(f"Credential pool exhausted during the response stream: {e}")
        yield f"data: {json.dumps({'error': str(e)})}\n\n"
        if logger:
            await logger.log_final_response(status_code=401, body={"error": str(e)})
        return
    except Exception as e:
        logging.error(f"An error occurred during the response stream: {e}")
        yield f"data: {json.dumps({'error': 'Internal server error'})}\n\n"
        if logger:
            await logger.log_final_response(status_code=500, body={"error": str(e)})
        return
    finally:
        await response_stream.aclose()

    if logger:
        await logger.log_final_response(status_code=200, body={"streamed_chunks": logger.chunk_count})


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    client: RotatingClient = Depends(get_rotating_client),
):
    """
    OpenAI-compatible endpoint relayed to the upstream with credential rotation.

    The Authorization header carries the upstream credentials themselves:
    `Bearer token1,token2,label::token3`.
    """
    logger = DetailedLogger() if getattr(request.app.state, "enable_request_logging", False) else None
    try:
        try:
            request_data = await request.json()
        except json.JSONDecodeError:
            return _error_response(400, "Invalid JSON in request body.")

        try:
            body = ChatCompletionRequest.model_validate(request_data)
            client.validate_request(body.model, body.stream)
        except UnsupportedModeError as e:
            return _error_response(400, str(e))
        except ValueError as e:
            return _error_response(400, f"Invalid Request: {e}")

        if logger:
            await logger.log_request(headers=request.headers, body=request_data)

        authorization = strip_bearer(request.headers.get("authorization"))
        if not authorization:
            return _error_response(401, "Authorization token is required")

        try:
            pool = client.build_pool(authorization)
        except NoAvailableKeysError as e:
            return _error_response(401, str(e))

        client_info = (request.client.host, request.client.port) if request.client else ("unknown", 0)
        log_request_to_console(
            url=str(request.url),
            client_info=client_info,
            request_data=request_data,
            credential_count=len(pool),
        )

        checksum = request.headers.get("x-cursor-checksum")
        if body.stream:
            response_generator = client.acompletion(
                model=body.model,
                messages=body.messages,
                credentials=pool,
                stream=True,
                checksum=checksum,
            )
            return StreamingResponse(
                streaming_response_wrapper(request, response_generator, logger),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )

        try:
            response = await client.acompletion(
                model=body.model,
                messages=body.messages,
                credentials=pool,
                stream=False,
                checksum=checksum,
            )
        except NoAvailableKeysError as e:
            # Concurrent requests can blacklist the rest of the pool mid-retry.
            logging.warning(f"Credential pool exhausted: {e}")
            if logger:
                await logger.log_final_response(status_code=401, body={"error": str(e)})
            return _error_response(401, str(e))
        if logger:
            await logger.log_final_response(status_code=200, body=response)
        return JSONResponse(content=response)

    except Exception as e:
        logging.error(f"Request failed: {e}")
        if logger:
            await logger.log_final_response(status_code=500, body={"error": str(e)})
        return _error_response(500, "Internal server error")


@app.get("/")
def read_root():
    return {"Status": "Cursor gateway is running"}


@app.get("/v1/models")
async def list_models(definitions: ModelDefinitions = Depends(get_model_definitions)):
    """Returns the static model catalog in the OpenAI-compatible format."""
    return {"object": "list", "data": definitions.as_model_cards()}


@app.get("/v1/models/{model_id:path}")
async def get_model(model_id: str, definitions: ModelDefinitions = Depends(get_model_definitions)):
    card = definitions.get_model_card(model_id)
    if card is None:
        raise HTTPException(status_code=404, detail=f"Model '{model_id}' not found")
    return card


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cursor Rotating Gateway")
    parser.add_argument("--host", type=str, default=None, help="Host to bind the server to.")
    parser.add_argument("--port", type=int, default=None, help="Port to run the server on.")
    parser.add_argument(
        "--enable-request-logging", action="store_true", help="Enable request logging."
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    start_time = time.time()
    args = parse_args(argv)

    # Load main .env first, then any additional *.env files without overriding
    root_dir = Path.cwd()
    load_dotenv(root_dir / ".env")
    for env_file in sorted(root_dir.glob("*.env")):
        if env_file.name != ".env":
            load_dotenv(env_file, override=False)

    config = GatewayConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    from rich.console import Console

    console = Console()
    console.print("━" * 70)
    console.print(f"Starting gateway on {config.host}:{config.port}")
    console.print(f"Upstream: {config.upstream_url}")
    console.print(
        f"Default fingerprint: {'✓ Set' if config.default_checksum else '✗ Not set (generated per credential)'}"
    )
    console.print("━" * 70)

    with console.status("[dim]Configuring logging...", spinner="dots"):
        setup_logging(Path(os.getenv("GATEWAY_LOG_DIR", "logs")))

    app.state.config = config
    app.state.enable_request_logging = args.enable_request_logging
    if args.enable_request_logging:
        logging.info("Request logging is enabled.")

    console.print(f"✓ Server ready in {time.time() - start_time:.2f}s")

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
