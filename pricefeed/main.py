"""Price feed orchestrator.

Entry point: python -m pricefeed

Architecture:
- Stream supervisor: owns the single chain websocket session. Initializes
  anchor, catalog subscriptions and onboarding; on any init failure or
  connection loss it invalidates every subscription, waits the reconnect delay
  and repeats the whole sequence.
- Reconciler task: budgeted GeckoTerminal refresh, independent of the stream.
- Health monitor: restarts crashed tasks and logs component stats.
- Graceful shutdown on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pricefeed.config.settings import PriceFeedConfig, get_config
from pricefeed.connectors.chain_stream import ChainStream
from pricefeed.connectors.geckoterminal_client import GeckoTerminalClient
from pricefeed.connectors.uniswap_v3 import UniswapV3Reader
from pricefeed.core.anchor import AnchorTracker
from pricefeed.core.onboarding import OnboardingListener
from pricefeed.core.pool_resolver import PoolResolver
from pricefeed.core.reconciler import CallBudget, ReconciliationPoller
from pricefeed.core.swap_subscriber import SubscriptionRegistry, SwapSubscriber
from pricefeed.core.token_store import TokenStore, normalize_address
from pricefeed.utils.logger import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger("orchestrator")


# ---------------------------------------------------------------------------
# Task state tracking
# ---------------------------------------------------------------------------


@dataclass
class TaskState:
    """Runtime state for a managed task."""

    name: str
    factory: Callable[[], Coroutine[Any, Any, None]]
    task: asyncio.Task[None] | None = None
    restart_count: int = 0
    started_at: float = 0.0


class PriceFeedOrchestrator:
    """Wires the price feed components and keeps them running.

    Also the service handle for the read layer: ``subscribe_token`` onboards
    a token on demand.

    Args:
        config: Loaded config (defaults to ``get_config()``).
        session_factory: Async session factory (defaults to the shared engine).
        enable_reconciler: Run the aggregator reconciliation task.
    """

    def __init__(
        self,
        config: PriceFeedConfig | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        enable_reconciler: bool = True,
    ) -> None:
        self._config = config or get_config()
        self._owns_db = session_factory is None
        if session_factory is None:
            from pricefeed.utils.db import get_session_factory

            session_factory = get_session_factory()
        self._enable_reconciler = enable_reconciler

        self._shutdown_event = asyncio.Event()
        self._tasks: dict[str, TaskState] = {}
        self._session_ready = False
        self._session_count = 0
        self._start_time = 0.0

        chain = self._config.chain
        pricing = self._config.pricing
        resilience = self._config.resilience
        aggregator = self._config.aggregator

        self._store = TokenStore(session_factory)
        self._stream = ChainStream(
            self._config.ws_rpc_url,
            request_timeout_s=chain.request_timeout_s,
            heartbeat_s=chain.heartbeat_s,
        )
        self._reader = UniswapV3Reader(self._stream, chain.factory_address)
        self._resolver = PoolResolver(self._reader, chain.fee_tiers)
        self._anchor = AnchorTracker(
            reader=self._reader,
            resolver=self._resolver,
            stream=self._stream,
            store=self._store,
            reference_address=chain.reference_address,
            stable_address=chain.stable_address,
            reference_decimals=chain.reference_decimals,
            stable_decimals=chain.stable_decimals,
            max_price=pricing.max_price_usd,
            precision_exponent=pricing.precision_exponent,
        )
        self._registry = SubscriptionRegistry()
        self._subscriber = SwapSubscriber(
            registry=self._registry,
            resolver=self._resolver,
            reader=self._reader,
            stream=self._stream,
            anchor=self._anchor,
            store=self._store,
            resolver_cooldown_s=resilience.resolver_cooldown_s,
            retry_delay_s=resilience.subscribe_retry_delay_s,
            supply_timeout_s=chain.supply_timeout_s,
            max_price=pricing.max_price_usd,
            precision_exponent=pricing.precision_exponent,
        )
        self._onboarding = OnboardingListener(
            store=self._store,
            subscriber=self._subscriber,
            registry=self._registry,
            poll_interval_s=resilience.onboarding_poll_interval_s,
            reconcile_interval_s=resilience.onboarding_reconcile_interval_s,
        )
        self._aggregator = GeckoTerminalClient(
            network=chain.network,
            base_url=aggregator.base_url,
            api_key=self._config.geckoterminal_api_key,
            timeout_s=aggregator.timeout_seconds,
        )
        self._reconciler = ReconciliationPoller(
            store=self._store,
            client=self._aggregator,
            budget=CallBudget(aggregator.calls_per_minute, aggregator.window_s),
            batch_size=aggregator.batch_size,
            tick_interval_s=aggregator.tick_interval_s,
            max_price=pricing.max_price_usd,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """True while a stream session is initialized and connected."""
        return self._session_ready and self._stream.is_connected

    async def start(self) -> None:
        """Start all tasks and block until shutdown."""
        logger.info(
            "pricefeed_starting",
            network=self._config.chain.network,
            reconciler=self._enable_reconciler,
        )
        self._start_time = time.monotonic()

        self._install_signal_handlers()
        self._start_tasks()

        await self._shutdown_event.wait()
        await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Graceful shutdown: cancel tasks, drop subscriptions, close sessions."""
        logger.info("pricefeed_stopping")
        self._shutdown_event.set()

        for state in self._tasks.values():
            if state.task and not state.task.done():
                state.task.cancel()
        for state in self._tasks.values():
            if state.task:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await state.task

        await self._teardown_session()
        await self._stream.close()
        await self._aggregator.close()
        if self._owns_db:
            from pricefeed.utils.db import dispose_engine

            await dispose_engine()

        logger.info("pricefeed_stopped", sessions=self._session_count)

    async def subscribe_token(self, address: str) -> bool:
        """Onboard one token on demand. Idempotent.

        Returns:
            True if the token has a live subscription when the call returns.
        """
        addr = normalize_address(address)
        if not self.is_ready:
            logger.info("subscribe_token_deferred", address=addr, reason="stream_not_ready")
            return False
        token = await self._store.get_token(addr)
        return await self._subscriber.subscribe(token if token is not None else addr)

    # ------------------------------------------------------------------
    # Signal handlers
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Stream session lifecycle
    # ------------------------------------------------------------------

    async def _teardown_session(self) -> None:
        """Invalidate every listener before anything new can be created."""
        self._session_ready = False
        disposed = self._registry.invalidate_all()
        self._anchor.reset()
        await self._onboarding.stop()
        if disposed:
            logger.info("subscriptions_invalidated", count=disposed)

    async def _initialize_session(self) -> None:
        """Full init sequence: connect, seed anchor, onboarding, load catalog, subscribe."""
        await self._teardown_session()
        await self._stream.close()

        await self._stream.connect()
        anchor_price = await self._anchor.start()
        # Cursor first: a token inserted before the catalog read is then seen by both.
        await self._onboarding.start()
        tokens = await self._store.list_tokens()
        subscribed = await self._subscriber.subscribe_all(tokens)

        self._session_ready = True
        self._session_count += 1
        logger.info(
            "session_ready",
            session=self._session_count,
            anchor_usd=anchor_price,
            catalog=len(tokens),
            subscribed=subscribed,
        )

    async def _wait_for_disconnect(self) -> None:
        closed = asyncio.create_task(self._stream.wait_closed())
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({closed, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (closed, shutdown):
                task.cancel()

    async def _run_stream_supervisor(self) -> None:
        """Keep one initialized stream session alive, reinitializing after failures."""
        delay = self._config.resilience.reconnect_delay_s
        while not self._shutdown_event.is_set():
            try:
                await self._initialize_session()
                await self._wait_for_disconnect()
                if self._shutdown_event.is_set():
                    return
                logger.warning("stream_lost", reconnect_in_s=delay)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("session_init_failed", error=str(e), retry_in_s=delay)

            self._session_ready = False
            await self._sleep_or_shutdown(delay)

    async def _sleep_or_shutdown(self, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)

    # ------------------------------------------------------------------
    # Tasks and health
    # ------------------------------------------------------------------

    def _start_tasks(self) -> None:
        task_defs: list[tuple[str, Callable[[], Coroutine[Any, Any, None]]]] = [
            ("stream_supervisor", self._run_stream_supervisor),
        ]
        if self._enable_reconciler:
            task_defs.append(
                ("reconciler", lambda: self._reconciler.run(self._shutdown_event))
            )
        task_defs.append(("health_monitor", self._health_monitor))

        for name, factory in task_defs:
            state = TaskState(name=name, factory=factory)
            self._tasks[name] = state
            self._launch(state)

    def _launch(self, state: TaskState) -> None:
        state.started_at = time.monotonic()
        state.task = asyncio.create_task(state.factory(), name=f"pricefeed_{state.name}")

    async def _health_monitor(self) -> None:
        """Restart crashed tasks and log component stats."""
        interval = self._config.resilience.health_check_interval_s
        while not self._shutdown_event.is_set():
            await self._sleep_or_shutdown(interval)
            if self._shutdown_event.is_set():
                return
            self._check_tasks()
            logger.info(
                "health_status",
                ready=self.is_ready,
                sessions=self._session_count,
                uptime_s=int(time.monotonic() - self._start_time),
                anchor=self._anchor.stats,
                swaps=self._subscriber.stats,
                onboarding=self._onboarding.stats,
                stream=self._stream.stats,
                reconciler=self._reconciler.stats if self._enable_reconciler else None,
                aggregator=self._aggregator.usage_stats,
            )

    def _check_tasks(self) -> None:
        for name, state in self._tasks.items():
            if name == "health_monitor" or state.task is None or not state.task.done():
                continue
            exc = state.task.exception() if not state.task.cancelled() else None
            logger.warning(
                "health_task_crashed",
                task=name,
                error=str(exc) if exc else None,
                restart_count=state.restart_count + 1,
            )
            state.restart_count += 1
            self._launch(state)
