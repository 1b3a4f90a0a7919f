"""Handle for the intermediary PostgreSQL service.

The intermediary instance is a process-wide singleton: its data directory is
overwritten on every conversion. This handle does not lock it; callers that
may overlap must hold an external lock (for example ``flock(1)`` around the
cron entry) for the whole run.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog

from .config_loader import IntermediaryConfig, ToolPaths
from .exceptions import CommandError, PgConvertError
from .settings import PipelineTimeoutSettings
from .subprocess_manager import SubprocessManager

logger = structlog.get_logger()


class ServiceStateError(PgConvertError):
    """Operation attempted in the wrong service state."""


class PollTimeoutError(PgConvertError):
    """A readiness poll ran out of attempts."""


class ServiceState(str, Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    DATA_REPLACED = "data_replaced"
    STARTED = "started"


class ReadinessPoller:
    """Repeats a state check with exponential backoff up to a fixed count."""

    def __init__(
        self,
        max_polls: int = 480,
        initial_delay: float = 1.0,
        max_delay: float = 5.0,
        backoff_factor: float = 1.5,
    ):
        """Initialize the poller.

        Args:
            max_polls: Checks before giving up
            initial_delay: Delay after the first failed check (seconds)
            max_delay: Upper bound for the delay (seconds)
            backoff_factor: Exponential backoff multiplier
        """
        if max_polls < 1:
            raise ValueError("max_polls must be at least 1")
        self.max_polls = max_polls
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor

    @classmethod
    def from_settings(cls, settings: PipelineTimeoutSettings) -> "ReadinessPoller":
        return cls(
            max_polls=settings.max_polls,
            initial_delay=settings.poll_interval,
            max_delay=settings.poll_max_interval,
            backoff_factor=settings.poll_backoff,
        )

    async def wait_until(self, check: Callable[[], Awaitable[bool]], description: str) -> int:
        """Poll ``check`` until it returns True.

        Returns:
            Number of checks performed

        Raises:
            PollTimeoutError: ``check`` never succeeded within ``max_polls``
        """
        delay = self.initial_delay
        for attempt in range(1, self.max_polls + 1):
            if await check():
                logger.debug("Poll satisfied", condition=description, attempts=attempt)
                return attempt
            if attempt < self.max_polls:
                await asyncio.sleep(delay)
                delay = min(delay * self.backoff_factor, self.max_delay)

        raise PollTimeoutError(
            f"Timed out waiting for {description} after {self.max_polls} checks"
        )


class IntermediaryService:
    """Explicit resource handle for the intermediary PostgreSQL instance.

    Transitions: ``stop()`` -> STOPPED, ``mark_data_replaced()`` ->
    DATA_REPLACED, ``start()`` -> STARTED. Each transition is confirmed by
    polling the real service state.
    """

    def __init__(
        self,
        config: IntermediaryConfig,
        tools: ToolPaths,
        runner: SubprocessManager,
        poller: ReadinessPoller,
        command_timeout: float = 120,
    ):
        self.config = config
        self.tools = tools
        self.runner = runner
        self.poller = poller
        self.command_timeout = command_timeout
        self.state = ServiceState.UNKNOWN
        self.logger = logger.bind(component="intermediary_service", service=config.service_name)

    @property
    def connection_args(self) -> list[str]:
        return ["-h", self.config.host, "-p", str(self.config.port), "-U", self.config.user]

    async def is_running(self) -> bool:
        """``service <name> status`` exits 0 only while the server runs."""
        result = await self.runner.run_command(
            [self.tools.service, self.config.service_name, "status"],
            timeout=self.command_timeout,
            check=False,
        )
        return result.success

    async def is_ready(self) -> bool:
        """``pg_isready`` exits 0 once connections are accepted."""
        result = await self.runner.run_command(
            [self.tools.pg_isready, "-q", "-h", self.config.host, "-p", str(self.config.port)],
            timeout=self.command_timeout,
            check=False,
        )
        return result.success

    async def stop(self) -> None:
        if self.state not in (ServiceState.UNKNOWN, ServiceState.STARTED):
            raise ServiceStateError(f"Cannot stop service in state '{self.state.value}'")

        self.logger.info("Stopping intermediary service")
        await self._control("stop")
        await self.poller.wait_until(self._is_stopped, f"service '{self.config.service_name}' to stop")
        self.state = ServiceState.STOPPED
        self.logger.info("Intermediary service stopped")

    def mark_data_replaced(self) -> None:
        if self.state is not ServiceState.STOPPED:
            raise ServiceStateError(
                f"Data directory may only be replaced while stopped (state '{self.state.value}')"
            )
        self.state = ServiceState.DATA_REPLACED

    async def start(self) -> None:
        if self.state is not ServiceState.DATA_REPLACED:
            raise ServiceStateError(f"Cannot start service in state '{self.state.value}'")

        self.logger.info("Starting intermediary service")
        await self._control("start")
        await self.poller.wait_until(self.is_ready, f"service '{self.config.service_name}' to accept connections")
        self.state = ServiceState.STARTED
        self.logger.info("Intermediary service ready")

    def require_started(self) -> None:
        if self.state is not ServiceState.STARTED:
            raise ServiceStateError(
                f"Intermediary service has not been started with imported data (state '{self.state.value}')"
            )

    async def _is_stopped(self) -> bool:
        return not await self.is_running()

    async def _control(self, action: str) -> None:
        try:
            await self.runner.run_command(
                [self.tools.service, self.config.service_name, action],
                timeout=self.command_timeout,
            )
        except CommandError as e:
            raise CommandError(f"service {self.config.service_name} {action} failed: {e}") from e
