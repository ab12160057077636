import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from matrix_teams.bridge import Bridge, BridgeError
from matrix_teams.config import Settings, settings as default_settings
from matrix_teams.services.http_client import cleanup_http_client, get_http_client
from matrix_teams.services.matrix_service import MatrixAPIError

logger = logging.getLogger(__name__)

APP_SERVICE_PREFIX = "/_matrix/app/v1"


def get_bridge(request: Request) -> Bridge:
    return request.app.state.bridge


# --- Security ---
def verify_hs_token(request: Request) -> None:
    """Dependency checking the token the homeserver sends with every push."""
    expected = request.app.state.settings.hs_token
    if not expected:
        return

    candidates = []
    query_token = request.query_params.get("access_token")
    if query_token is not None:
        candidates.append(query_token)
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        candidates.append(auth[len("Bearer "):])

    if not any(secrets.compare_digest(token.encode(), expected.encode()) for token in candidates):
        raise HTTPException(status_code=403, detail="invalid homeserver token")


router = APIRouter(dependencies=[Depends(verify_hs_token)])


@router.get("/rooms/{room_alias}")
async def query_room_alias(room_alias: str, bridge: Bridge = Depends(get_bridge)):
    """Create the room behind an alias the homeserver asked about."""
    try:
        await bridge.provision_alias(room_alias)
    except ValueError:
        return JSONResponse(status_code=400, content={"msg": "invalid request"})
    except MatrixAPIError as e:
        logger.error(f"unable to create room {room_alias}: {e}")
        return JSONResponse(status_code=500, content={"msg": "unable to create room"})
    return {}


@router.put("/transactions/{txn_id}")
async def push_transaction(txn_id: str, request: Request, bridge: Bridge = Depends(get_bridge)):
    try:
        parsed_id = int(txn_id)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "invalid ID"})

    try:
        body = await request.body()
    except ClientDisconnect as e:
        logger.error(f"unable to read body: {e}")
        return {}

    bridge.log_transaction(parsed_id, body)
    return {}


async def _run_startup_sync(bridge: Bridge) -> None:
    try:
        report = await bridge.sync_teams()
    except BridgeError as e:
        logger.error(f"startup sync failed: {e}")
        return
    except Exception:
        logger.exception("startup sync crashed")
        return
    logger.info(f"startup sync mirrored {len(report.channels)} channels")


def create_app(settings: Optional[Settings] = None, bridge: Optional[Bridge] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await get_http_client()
        sync_task = None
        if settings.sync_on_startup:
            sync_task = asyncio.create_task(_run_startup_sync(app.state.bridge))
        try:
            yield
        finally:
            # Do not hold shutdown on a long sync
            if sync_task is not None and not sync_task.done():
                sync_task.cancel()
                await asyncio.gather(sync_task, return_exceptions=True)
            await cleanup_http_client()

    app = FastAPI(title="Matrix Teams Application Service", debug=settings.debug, lifespan=lifespan)
    app.state.settings = settings
    app.state.bridge = bridge or Bridge(settings)

    @app.get("/health")
    async def health(request: Request):
        """Liveness probe; does not call either upstream."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "matrix_url": settings.matrix_url,
            "teams_connected": request.app.state.bridge.teams_connected,
        }

    app.include_router(router)
    app.include_router(router, prefix=APP_SERVICE_PREFIX)
    return app


app = create_app()
