"""Companion daemon - wires the control plane together and runs it."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from companion import __version__
from companion.api_server import APIServer
from companion.config import CompanionConfig, config
from companion.core import tmux_bridge
from companion.core.escalation import EscalationService, PushNotifier
from companion.core.event_bus import EventBus
from companion.core.events import CompanionEvents
from companion.core.input_injector import InputInjector
from companion.core.models import SessionStatusEvent
from companion.core.work_group_store import WorkGroupStore
from companion.core.work_groups import WorkGroupManager
from companion.gateway import Gateway
from companion.logging_config import setup_logging

logger = logging.getLogger(__name__)


class CompanionDaemon:  # pylint: disable=too-many-instance-attributes
    """Owns every long-lived component of the daemon."""

    def __init__(
        self,
        settings: Optional[CompanionConfig] = None,
        notifier: Optional[PushNotifier] = None,
        store: Optional[WorkGroupStore] = None,
    ) -> None:
        self.settings = settings or config
        tmux_bridge.set_operation_timeout(self.settings.tmux.operation_timeout)
        self.shutdown_event = asyncio.Event()
        self.event_bus = EventBus()
        self.injector = InputInjector(self.settings.tmux.default_session, self.settings.injector)

        orchestrator = self.settings.orchestrator
        if store is None:
            store = WorkGroupStore(orchestrator.state_path) if orchestrator.state_path else WorkGroupStore()
        self.work_groups = WorkGroupManager(
            self.injector, self.event_bus, orchestrator, store, tmux_settings=self.settings.tmux
        )

        self.escalation = EscalationService(self.settings.escalation, notifier)
        self.escalation.attach(self.event_bus)

        self.gateway = Gateway(self.injector, self.work_groups, self.settings.tmux, self.escalation)
        self.api_server = APIServer(self.gateway, self.event_bus, self.settings.server)
        self.escalation.set_broadcast_callback(self.api_server.broadcast_escalation)

    async def publish_session_status(self, status: SessionStatusEvent) -> None:
        """In-process entry point for watcher status events.

        An out-of-process watcher posts the same events to `POST /session-status`
        on the API server, which emits them on the same bus.
        """
        await self.event_bus.emit(CompanionEvents.SESSION_STATUS, status)

    async def start(self) -> None:
        logger.info("Companion daemon %s starting", __version__)
        self.work_groups.start()
        self.escalation.start()
        await self.api_server.start()
        logger.info("Companion daemon started")

    async def stop(self) -> None:
        logger.info("Companion daemon stopping")
        await self.api_server.stop()
        await self.escalation.shutdown()
        await self.work_groups.stop()
        logger.info("Companion daemon stopped")


async def main(log_level: Optional[str] = None) -> None:
    """Run the daemon until SIGTERM or SIGINT."""
    setup_logging(level=log_level)
    daemon = CompanionDaemon()

    loop = asyncio.get_running_loop()

    def _request_shutdown(sig: signal.Signals) -> None:
        logger.info("Received %s signal...", sig.name)
        daemon.shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown, sig)

    try:
        await daemon.start()
        await daemon.shutdown_event.wait()
    except (OSError, RuntimeError, TimeoutError) as e:
        logger.error("Daemon startup failed: %s", e, exc_info=True)
        sys.exit(1)
    finally:
        try:
            await daemon.stop()
        except Exception as e:  # noqa: BLE001 - best-effort teardown
            logger.error("Error during daemon stop: %s", e)


def run() -> None:
    """Console entry point."""
    parser = argparse.ArgumentParser(prog="companion-daemon", description="Companion agent control daemon")
    parser.add_argument("--log-level", default=None, help="Override COMPANION_LOG_LEVEL")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args()
    asyncio.run(main(args.log_level))


if __name__ == "__main__":
    run()
