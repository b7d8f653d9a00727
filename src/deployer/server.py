"""HTTP and WebSocket surface for the instance orchestrator."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import DeployerConfig, validate_channel
from .errors import DeployerError, InstanceNotFoundError, MissingContainerError, ValidationError
from .identity import resolve_identity
from .logging_manager import LoggingManager
from .runtime import normalize_tail
from .services import DeployerServices
from .simple_models import Instance, Task, TaskType
from .task_queue import enqueue_task

logger = logging.getLogger(__name__)

ACTION_TASKS = {
    "start": TaskType.INSTANCE_START,
    "stop": TaskType.INSTANCE_STOP,
    "delete": TaskType.INSTANCE_DELETE,
    "update": TaskType.INSTANCE_UPDATE,
}


class CreateInstanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=100)
    channel: str = ""
    bot_token: str | None = Field(default=None, alias="botToken")
    ai_provider: str | None = Field(default=None, alias="aiProvider")
    api_key: str | None = Field(default=None, alias="apiKey")
    region: str | None = None
    instance_type: str | None = Field(default=None, alias="instanceType")


def _status_for(error: DeployerError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, InstanceNotFoundError):
        return 404
    if isinstance(error, MissingContainerError):
        return 400
    return 500


class DeployerServer:
    """FastAPI application exposing instance management and the web terminal."""

    def __init__(
        self,
        config: DeployerConfig,
        services: DeployerServices | None = None,
        run_processor: bool = True,
        logging_manager: LoggingManager | None = None,
    ):
        """Initialize the server.

        Args:
            config: Deployer configuration
            services: Pre-built collaborators (built from ``config`` if omitted)
            run_processor: Run the task queue processor for the app's lifetime
            logging_manager: Logging setup; created from ``config`` if omitted
        """
        self.config = config
        self.logging_manager = logging_manager or LoggingManager(config.log_dir, config.log_level)
        self.services = services or DeployerServices(config)
        self.run_processor = run_processor

        self.app = FastAPI(
            title="ClawDeploy Orchestrator",
            description="Provision and operate per-user gateway instances",
            version="0.1.0",
            lifespan=self._lifespan,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.exception_handler(DeployerError)
        async def deployer_error_handler(request: Request, exc: DeployerError):
            status = _status_for(exc)
            if status >= 500:
                logger.error(f"Request failed: {exc}", extra={"path": request.url.path})
            return JSONResponse(status_code=status, content={"error": str(exc)})

        self._setup_routes()
        logger.info("Deployer server initialized")

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.run_processor:
            await self.services.processor.start()
        try:
            yield
        finally:
            if self.run_processor:
                await self.services.processor.stop()

    def _setup_routes(self):
        store = self.services.store
        tools = self.services.tools

        def require_user(authorization: str | None = Header(default=None)) -> str:
            token = None
            if authorization and authorization.lower().startswith("bearer "):
                token = authorization[7:]
            user_id = resolve_identity(token)
            if user_id is None:
                raise HTTPException(status_code=401, detail="Unauthorized")
            return user_id

        async def owned_record(instance_id: str, user_id: str) -> dict[str, Any]:
            record = await store.find_first("instances", {"id": instance_id, "user_id": user_id})
            if record is None:
                raise InstanceNotFoundError()
            return record

        @self.app.get("/")
        async def root():
            return {"name": "ClawDeploy Orchestrator", "version": "0.1.0", "status": "running"}

        @self.app.get("/health")
        async def health_check():
            return {
                "status": "healthy",
                "task_processor": self.services.processor.is_running(),
                "container_runtime": await self.services.runtime.ping(),
            }

        @self.app.post("/api/instances", status_code=202)
        async def create_instance(body: CreateInstanceRequest, user_id: str = Depends(require_user)):
            try:
                channel = validate_channel(body.channel)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            name = body.name.strip()
            if not name:
                raise ValidationError("Instance name is required")

            instance = Instance(
                user_id=user_id,
                name=name,
                channel=channel,
                bot_token=body.bot_token,
                ai_provider=body.ai_provider,
                api_key=body.api_key,
                region=body.region,
                instance_type=body.instance_type,
            )
            await store.insert("instances", instance.to_record())
            task = await enqueue_task(
                store,
                TaskType.INSTANCE_CREATE,
                user_id,
                params=body.model_dump(),
                instance_id=instance.id,
            )
            return {"instance": instance.public_dict(), "task": task.public_dict()}

        @self.app.get("/api/instances")
        async def list_instances(user_id: str = Depends(require_user)):
            return {"instances": await tools.list_instances(user_id)}

        @self.app.get("/api/instances/{instance_id}")
        async def get_instance(instance_id: str, user_id: str = Depends(require_user)):
            record = await owned_record(instance_id, user_id)
            return Instance.from_record(record).public_dict()

        @self.app.post("/api/instances/{instance_id}/{action}", status_code=202)
        async def instance_action(
            instance_id: str, action: str, user_id: str = Depends(require_user)
        ):
            task_type = ACTION_TASKS.get(action)
            if task_type is None:
                raise ValidationError(f"Unknown action: {action}")
            await owned_record(instance_id, user_id)
            task = await enqueue_task(store, task_type, user_id, instance_id=instance_id)
            return task.public_dict()

        @self.app.get("/api/instances/{instance_id}/logs")
        async def instance_logs(
            instance_id: str,
            tail: str = Query(default="100"),
            user_id: str = Depends(require_user),
        ):
            tail_value = normalize_tail(tail)
            logs = await tools.logs(user_id, instance_id, tail_value)
            return {"logs": logs}

        @self.app.post("/api/proxy/sync", status_code=202)
        async def proxy_sync(user_id: str = Depends(require_user)):
            task = await enqueue_task(store, TaskType.NGINX_SYNC, user_id)
            return task.public_dict()

        @self.app.get("/api/tasks/{task_id}")
        async def get_task(task_id: str, user_id: str = Depends(require_user)):
            record = await store.find_first("tasks", {"id": task_id, "user_id": user_id})
            if record is None:
                raise HTTPException(status_code=404, detail="Task not found")
            return Task.from_record(record).public_dict()

        @self.app.get("/api/audit")
        async def audit_events(
            limit: int = Query(default=100, ge=1, le=1000), user_id: str = Depends(require_user)
        ):
            return {"events": self.logging_manager.read_audit_events(limit)}

        @self.app.websocket("/ws/terminal/{instance_id}")
        async def terminal_websocket(websocket: WebSocket, instance_id: str, token: str | None = None):
            await self.services.terminal.handle(websocket, instance_id, token)

    async def start_server(self):
        """Serve the app with uvicorn until shutdown."""
        import uvicorn

        logger.info(f"Starting deployer server on {self.config.server_host}:{self.config.server_port}")
        config = uvicorn.Config(
            self.app,
            host=self.config.server_host,
            port=self.config.server_port,
            log_level=self.config.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()


async def main():
    """Main entry point for the HTTP server."""
    config = DeployerConfig.from_env()
    server = DeployerServer(config)
    await server.start_server()


if __name__ == "__main__":
    asyncio.run(main())
