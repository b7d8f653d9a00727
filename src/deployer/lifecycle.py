"""Lifecycle operations over instances.

Each operation keeps the record store, instance storage, the container and the
proxy port map consistent. Proxy synchronization failures never fail an
operation; any other failure mid-operation marks the instance ``error``
before the exception propagates.
"""

import logging
from typing import Any

from .config import validate_channel
from .diagnostics import DEFAULT_MAX_OUTPUT, DEFAULT_TIMEOUT, run_diagnostic
from .errors import (
    ContainerNotFoundError,
    ContainerRuntimeError,
    InstanceNotFoundError,
    MissingContainerError,
    ValidationError,
)
from .identity import validate_user_id
from .logging_manager import audit_log
from .provisioner import ConfigParams, InstanceConfigProvisioner, generate_gateway_token
from .proxy import ProxySynchronizer
from .rebuild import ImageRebuilder
from .reports import ReportLog
from .runtime import ContainerRuntimeClient
from .simple_models import Instance, InstanceStatus
from .store import RecordStore

logger = logging.getLogger(__name__)

REUSABLE_STATUSES = (InstanceStatus.CREATING, InstanceStatus.ERROR)


class LifecycleTools:
    """Named lifecycle operations, each scoped to a caller identity."""

    def __init__(
        self,
        store: RecordStore,
        runtime: ContainerRuntimeClient,
        provisioner: InstanceConfigProvisioner,
        proxy: ProxySynchronizer,
        rebuilder: ImageRebuilder,
        reports: ReportLog,
        diagnostic_timeout: float = DEFAULT_TIMEOUT,
        diagnostic_max_output: int = DEFAULT_MAX_OUTPUT,
        diagnostic_cwd: str | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.provisioner = provisioner
        self.proxy = proxy
        self.rebuilder = rebuilder
        self.reports = reports
        self.diagnostic_timeout = diagnostic_timeout
        self.diagnostic_max_output = diagnostic_max_output
        self.diagnostic_cwd = diagnostic_cwd

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    async def _owned_instance(self, user_id: str, instance_id: str) -> Instance:
        validate_user_id(user_id)
        record = await self.store.find_first("instances", {"id": instance_id, "user_id": user_id})
        if record is None:
            raise InstanceNotFoundError()
        return Instance.from_record(record)

    async def _update_owned(self, instance_id: str, user_id: str, changes: dict[str, Any]) -> None:
        """Ownership-scoped update that must touch exactly one record."""
        if "status" in changes and isinstance(changes["status"], InstanceStatus):
            changes = {**changes, "status": changes["status"].value}
        count = await self.store.update_many(
            "instances", {"id": instance_id, "user_id": user_id}, changes
        )
        if count != 1:
            raise InstanceNotFoundError()

    async def _mark_error(self, instance_id: str, user_id: str) -> None:
        try:
            await self.store.update_many(
                "instances",
                {"id": instance_id, "user_id": user_id},
                {"status": InstanceStatus.ERROR.value},
            )
        except Exception as e:
            logger.error(f"Failed to mark instance {instance_id} as error: {e}")

    async def _safe_sync(self) -> bool:
        try:
            await self.proxy.sync()
            return True
        except Exception as e:
            logger.warning(f"Proxy sync failed (non-fatal): {e}")
            return False

    async def _find_placeholder(
        self, user_id: str, name: str, instance_id: str | None
    ) -> Instance | None:
        """Locate a record an earlier create call left behind.

        An explicit ``instance_id`` is authoritative. Without one, the oldest
        record with the same owner and name that is still ``creating`` and has
        no container is reused.
        """
        if instance_id:
            record = await self.store.find_first(
                "instances", {"id": instance_id, "user_id": user_id}
            )
            if record is None:
                raise InstanceNotFoundError()
            return Instance.from_record(record)

        record = await self.store.find_first(
            "instances",
            {
                "user_id": user_id,
                "name": name,
                "status": InstanceStatus.CREATING.value,
                "container_id": None,
            },
            order_by="created_at",
        )
        return Instance.from_record(record) if record else None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        name: str,
        channel: str = "",
        bot_token: str | None = None,
        ai_provider: str | None = None,
        api_key: str | None = None,
        region: str | None = None,
        instance_type: str | None = None,
        instance_id: str | None = None,
    ) -> dict[str, Any]:
        """Provision storage, config and a container for a new instance.

        Args:
            user_id: Owning user identity
            name: Display name
            channel: Messaging channel kind ("telegram", "discord" or "")
            bot_token: Channel bot token
            ai_provider: AI provider name
            api_key: AI provider API key
            region: Deployment region label
            instance_type: Instance size label
            instance_id: Id of a placeholder record to reuse

        Returns:
            Dict with instance_id, port, gateway_token and status

        Raises:
            ValidationError: Malformed identity, name or channel
            InstanceNotFoundError: ``instance_id`` given but not owned by the caller
            ContainerRuntimeError: Container could not be launched
        """
        validate_user_id(user_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Instance name is required")
        try:
            channel = validate_channel(channel)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        fields = {
            "name": name,
            "channel": channel,
            "bot_token": bot_token,
            "ai_provider": ai_provider,
            "api_key": api_key,
            "region": region,
            "instance_type": instance_type,
        }

        instance = await self._find_placeholder(user_id, name, instance_id)
        if instance is not None and instance.status == InstanceStatus.RUNNING and instance.container_id:
            logger.info(f"Instance {instance.id} already running, create is a no-op")
            return {
                "instance_id": instance.id,
                "port": instance.port,
                "gateway_token": instance.gateway_token,
                "status": instance.status.value,
            }
        if instance is not None:
            if instance.status not in REUSABLE_STATUSES or instance.container_id:
                raise ValidationError(f"Instance {instance.id} is not awaiting creation")
            logger.info(f"Reusing placeholder record {instance.id}", extra={"instance_id": instance.id})
            await self._update_owned(
                instance.id, user_id, {**fields, "status": InstanceStatus.CREATING}
            )
        else:
            instance = Instance(user_id=user_id, **fields)
            await self.store.insert("instances", instance.to_record())

        container_id = None
        try:
            await self.provisioner.create_storage(instance.id)
            gateway_token = generate_gateway_token()
            params = ConfigParams(
                instance_id=instance.id,
                gateway_token=gateway_token,
                channel=channel,
                bot_token=bot_token,
                ai_provider=ai_provider,
                api_key=api_key,
            )
            await self.provisioner.write_config(params)

            launched = await self.runtime.create(
                instance.id,
                self.provisioner.container_env(params),
                self.provisioner.volumes(instance.id),
            )
            container_id = launched["container_id"]
            port = launched["port"]

            await self._update_owned(
                instance.id,
                user_id,
                {
                    "container_id": container_id,
                    "port": port,
                    "gateway_token": gateway_token,
                    "status": InstanceStatus.RUNNING,
                },
            )
        except Exception as e:
            logger.error(
                f"Instance creation failed: {e}",
                extra={"instance_id": instance.id, "user_id": user_id},
            )
            if container_id:
                try:
                    await self.runtime.remove(container_id)
                except ContainerRuntimeError as cleanup_error:
                    logger.warning(f"Failed to remove orphaned container: {cleanup_error}")
            await self.provisioner.remove_storage(instance.id)
            await self._mark_error(instance.id, user_id)
            raise

        await self._safe_sync()
        audit_log(
            logger,
            f"Instance {instance.id} created",
            action="instance_create",
            metadata={"instance_id": instance.id, "user_id": user_id, "port": port},
        )
        return {
            "instance_id": instance.id,
            "port": port,
            "gateway_token": gateway_token,
            "status": InstanceStatus.RUNNING.value,
        }

    async def _toggle(self, user_id: str, instance_id: str, target: InstanceStatus) -> dict[str, Any]:
        instance = await self._owned_instance(user_id, instance_id)
        if not instance.container_id:
            raise MissingContainerError()

        if target == InstanceStatus.RUNNING:
            await self.runtime.start(instance.container_id)
        else:
            await self.runtime.stop(instance.container_id)

        await self._update_owned(instance_id, user_id, {"status": target})
        await self._safe_sync()

        action = "instance_start" if target == InstanceStatus.RUNNING else "instance_stop"
        audit_log(
            logger,
            f"Instance {instance_id} {target.value}",
            action=action,
            metadata={"instance_id": instance_id, "user_id": user_id},
        )
        return {
            "id": instance_id,
            "status": target.value,
            "port": instance.port,
            "gateway_token": instance.gateway_token,
        }

    async def start(self, user_id: str, instance_id: str) -> dict[str, Any]:
        return await self._toggle(user_id, instance_id, InstanceStatus.RUNNING)

    async def stop(self, user_id: str, instance_id: str) -> dict[str, Any]:
        return await self._toggle(user_id, instance_id, InstanceStatus.STOPPED)

    async def update(self, user_id: str, instance_id: str) -> dict[str, Any]:
        """Rebuild the shared image and recreate the instance container on it."""
        instance = await self._owned_instance(user_id, instance_id)
        await self._update_owned(instance_id, user_id, {"status": InstanceStatus.UPDATING})

        try:
            if instance.container_id:
                try:
                    await self.runtime.remove(instance.container_id)
                except ContainerRuntimeError as e:
                    logger.warning(f"Failed to remove old container (continuing): {e}")

            await self.rebuilder.rebuild()

            params = ConfigParams(
                instance_id=instance.id,
                gateway_token=instance.gateway_token or generate_gateway_token(),
                channel=instance.channel,
                bot_token=instance.bot_token,
                ai_provider=instance.ai_provider,
                api_key=instance.api_key,
            )
            await self.provisioner.create_storage(instance.id)
            await self.provisioner.write_config(params)

            launched = await self.runtime.create(
                instance.id,
                self.provisioner.container_env(params),
                self.provisioner.volumes(instance.id),
            )
            await self._update_owned(
                instance_id,
                user_id,
                {
                    "container_id": launched["container_id"],
                    "port": launched["port"],
                    "gateway_token": params.gateway_token,
                    "status": InstanceStatus.RUNNING,
                },
            )
        except Exception as e:
            logger.error(f"Instance update failed: {e}", extra={"instance_id": instance_id})
            await self._mark_error(instance_id, user_id)
            raise

        await self._safe_sync()
        audit_log(
            logger,
            f"Instance {instance_id} updated",
            action="instance_update",
            metadata={"instance_id": instance_id, "port": launched["port"]},
        )
        return {"id": instance_id, "status": InstanceStatus.RUNNING.value, "port": launched["port"]}

    async def delete(self, user_id: str, instance_id: str) -> dict[str, Any]:
        instance = await self._owned_instance(user_id, instance_id)

        if instance.container_id:
            try:
                await self.runtime.remove(instance.container_id)
            except ContainerNotFoundError:
                logger.info(f"Container for {instance_id} already gone")
            except ContainerRuntimeError:
                await self._mark_error(instance_id, user_id)
                raise

        await self._update_owned(
            instance_id,
            user_id,
            {"status": InstanceStatus.STOPPED, "container_id": None, "port": None},
        )
        await self.provisioner.remove_storage(instance_id)
        await self.store.delete_many("instances", {"id": instance_id, "user_id": user_id})
        await self._safe_sync()

        audit_log(
            logger,
            f"Instance {instance_id} deleted",
            action="instance_delete",
            metadata={"instance_id": instance_id, "user_id": user_id},
        )
        return {"instance_id": instance_id, "deleted": True}

    async def sync_proxy(self) -> dict[str, bool]:
        """Regenerate the port map, then run the proxy config self-test."""
        reload_success = await self._safe_sync()
        verification_passed = await self.proxy.verify()
        return {"reload_success": reload_success, "verification_passed": verification_passed}

    async def logs(self, user_id: str, instance_id: str, tail: int | str = 100) -> str:
        instance = await self._owned_instance(user_id, instance_id)
        if not instance.container_id:
            raise MissingContainerError()
        return await self.runtime.logs(instance.container_id, tail)

    async def status(self, user_id: str, instance_id: str) -> dict[str, Any]:
        instance = await self._owned_instance(user_id, instance_id)
        container_status = (
            await self.runtime.status(instance.container_id) if instance.container_id else None
        )
        return {
            "id": instance.id,
            "status": instance.status.value,
            "container_status": container_status,
        }

    async def list_instances(self, user_id: str) -> list[dict[str, Any]]:
        validate_user_id(user_id)
        records = await self.store.find_many(
            "instances", {"user_id": user_id}, order_by="created_at", descending=True
        )
        return [Instance.from_record(record).public_dict() for record in records]

    async def diagnose(self, command: str, timeout: float | None = None) -> dict[str, Any]:
        return await run_diagnostic(
            command,
            timeout=timeout or self.diagnostic_timeout,
            max_output=self.diagnostic_max_output,
            cwd=self.diagnostic_cwd,
        )

    async def report(
        self,
        success: bool,
        action: str,
        data: dict[str, Any] | None = None,
        errors: list[str] | None = None,
    ) -> dict[str, Any]:
        return await self.reports.report_result(success, action, data, errors)
