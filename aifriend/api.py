from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import config
from .chat_function import FUNCTION_PATH, chat_with_friend
from .inference import ConfigurationError, GatewayClient, InferenceError
from .store import FriendStore, PersonaNotFoundError, StoreError, build_store

log = logging.getLogger(__name__)

CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


class ChatFunctionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    persona_id: str = Field(alias="personaId", min_length=1)
    message: str


class ChatFunctionResponse(BaseModel):
    message: str


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(store: FriendStore, *, client: Optional[GatewayClient] = None) -> FastAPI:
    """Build the HTTP service exposing the chat function and a health check."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        yield
        app.state.gateway.close()

    app = FastAPI(title="AI Friend", lifespan=_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_HEADERS,
    )
    app.state.store = store
    app.state.gateway = client or GatewayClient()

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "personaId and message are required")

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "store": app.state.store.mode}

    @app.post(FUNCTION_PATH, response_model=ChatFunctionResponse)
    def chat_with_friend_endpoint(body: ChatFunctionRequest):
        try:
            reply = chat_with_friend(
                body.persona_id,
                body.message,
                store=app.state.store,
                client=app.state.gateway,
            )
        except PersonaNotFoundError as exc:
            log.warning("Chat function called for unknown persona: %s", exc)
            return _error(404, "Persona not found")
        except ConfigurationError as exc:
            log.error("Chat function misconfigured: %s", exc)
            return _error(500, "Service misconfigured")
        except InferenceError as exc:
            log.error("Error in chat-with-friend function: %s", exc)
            return _error(500, "AI gateway error")
        except StoreError as exc:
            log.error("Error in chat-with-friend function: %s", exc)
            return _error(500, "Storage error")
        except Exception:
            log.exception("Unexpected error in chat-with-friend function")
            return _error(500, "Internal error")
        return ChatFunctionResponse(message=reply)

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL)
    uvicorn.run(
        create_app(build_store()),
        host=config.SERVER_HOST,
        port=config.SERVER_PORT,
    )


if __name__ == "__main__":
    main()


__all__ = ["ChatFunctionRequest", "ChatFunctionResponse", "create_app", "main"]
