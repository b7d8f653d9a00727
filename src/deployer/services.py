"""Wires the deployer components together from a ``DeployerConfig``."""

import logging

from observability.alerting.engine import AlertEngine
from observability.tracing.exporters import exporter_from_config
from observability.tracing.tracer import Tracer

from .config import DeployerConfig
from .lifecycle import LifecycleTools
from .provisioner import InstanceConfigProvisioner
from .proxy import ProxySynchronizer
from .rebuild import ImageRebuilder, RebuildSlot
from .reports import ReportLog
from .runtime import ContainerRuntimeClient
from .store import RecordStore
from .task_queue import TaskQueueProcessor
from .terminal import TerminalProxy

logger = logging.getLogger(__name__)


class DeployerServices:
    """Container for the long-lived collaborators shared by every surface."""

    def __init__(
        self,
        config: DeployerConfig,
        store: RecordStore | None = None,
        runtime: ContainerRuntimeClient | None = None,
        proxy: ProxySynchronizer | None = None,
    ):
        self.config = config
        self.store = store or RecordStore(config.store_path)
        self.runtime = runtime or ContainerRuntimeClient(
            image=config.image_tag,
            container_port=config.container_port,
            nano_cpus=config.nano_cpus,
            memory_bytes=config.memory_bytes,
            restart_policy=config.restart_policy,
            min_port=config.min_port,
            max_port=config.max_port,
            port_retry_attempts=config.port_retry_attempts,
        )
        self.provisioner = InstanceConfigProvisioner(config.data_root)
        self.proxy = proxy or ProxySynchronizer(
            self.store,
            config.proxy_map_path,
            reload_command=config.proxy_reload_command,
            verify_command=config.proxy_verify_command,
        )
        self.rebuild_slot = RebuildSlot()
        self.rebuilder = ImageRebuilder(
            self.runtime, config.image_source_dir, config.image_tag, self.rebuild_slot
        )
        self.reports = ReportLog(config.report_dir)
        self.tools = LifecycleTools(
            store=self.store,
            runtime=self.runtime,
            provisioner=self.provisioner,
            proxy=self.proxy,
            rebuilder=self.rebuilder,
            reports=self.reports,
            diagnostic_timeout=config.diagnostic_timeout,
            diagnostic_max_output=config.diagnostic_max_output,
            diagnostic_cwd=config.diagnostic_cwd,
        )
        self.alert_engine = AlertEngine(config.alert_file)
        self.processor = TaskQueueProcessor(
            store=self.store,
            tools=self.tools,
            tracer_factory=self.new_tracer,
            alert_engine=self.alert_engine,
            poll_interval=config.task_poll_interval,
            error_backoff=config.task_error_backoff,
        )
        self.terminal = TerminalProxy(self.store, self.runtime)

    def new_tracer(self, user_id: str | None = None, task_type: str | None = None) -> Tracer:
        return Tracer(
            user_id=user_id,
            task_type=task_type,
            trace_dir=self.config.trace_dir,
            exporter=exporter_from_config(self.config.trace_export_url),
        )
