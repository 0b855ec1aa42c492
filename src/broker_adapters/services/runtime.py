"""
Adapter runtime façade coordinating the catalogue, settings and contract components.

The runtime keeps wiring reusable for both CLI commands and long-running
services: it resolves each adapter's effective configuration, builds its
transport, pool, retry policy, error budget and scheduler or delivery executor,
and drives all active instances from one timer thread on a shared worker pool.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from dataclasses import dataclass, field
from logging import LoggerAdapter
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..adapters import (
    HttpTransport,
    JsonLinesDeadLetterSink,
    JsonLinesSink,
    LocalFileTransport,
    SftpTransport,
    Transport,
    VerificationResult,
)
from ..contract import (
    AdapterDisabled,
    AdapterError,
    CircuitBreaker,
    ConfigError,
    ConnectionLeaseManager,
    Cursor,
    CursorStore,
    DedupIndex,
    DeliveryExecutor,
    DeliveryOutcome,
    EffectiveConfig,
    ErrorBudget,
    PollingScheduler,
    PollOutcome,
    RateLimiter,
    Record,
    RetryPolicy,
    StateStore,
    TickStatus,
    WebhookIngestor,
    WebhookResult,
    build_store,
    resolve,
)
from ..core import AdapterDescriptor, AdapterDirection, AdapterRegistry, AdapterStatus, ExecutionContext

TransportFactory = Callable[[EffectiveConfig], Transport]

DEFAULT_TRANSPORTS: Mapping[str, TransportFactory] = {
    "file": LocalFileTransport.from_config,
    "sftp": SftpTransport.from_config,
    "http": HttpTransport.from_config,
}


@dataclass(slots=True)
class AdapterInstance:
    """Components wired for one activation of an adapter."""

    descriptor: AdapterDescriptor
    config: EffectiveConfig
    transport: Transport
    leases: ConnectionLeaseManager
    retry: RetryPolicy
    budget: ErrorBudget
    dedup: Optional[DedupIndex] = None
    scheduler: Optional[PollingScheduler] = None
    executor: Optional[DeliveryExecutor] = None
    rate_limiter: Optional[RateLimiter] = None
    next_fire: float = 0.0
    started: bool = False
    future: Optional[Future] = field(default=None, repr=False)

    @property
    def busy(self) -> bool:
        return self.future is not None and not self.future.done()

    @property
    def adapter_id(self) -> str:
        return self.descriptor.adapter_id

    def status(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.adapter_id,
            "type": self.descriptor.adapter_type,
            "direction": self.descriptor.direction.value,
            "pool": self.leases.stats(),
        }
        if self.scheduler is not None:
            payload.update(self.scheduler.snapshot())
            payload["next_fire"] = self.next_fire
        if self.executor is not None:
            payload.update(self.executor.snapshot())
        return payload


@dataclass(slots=True)
class AdapterRuntime:
    """
    High-level façade used by CLI commands and services.

    Parameters
    ----------
    registry:
        Adapter catalogue with the default and type-global configuration layers.
    context:
        Execution context supplying settings, the state directory and options.
    sink:
        Destination of inbound records. Defaults to one JSON lines file per
        adapter under ``<state_dir>/inbox``.
    dead_letters:
        Destination of terminally failed records. Defaults to JSON lines files
        under ``<state_dir>/dead-letters``.
    store:
        State store override; otherwise selected by the settings ``[store]`` table.
    """

    registry: AdapterRegistry
    context: ExecutionContext
    sink: Any = None
    dead_letters: Any = None
    store: Optional[StateStore] = None
    transports: Mapping[str, TransportFactory] = field(default_factory=lambda: dict(DEFAULT_TRANSPORTS))
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep
    max_workers: int = 4
    logger: LoggerAdapter = field(init=False, repr=False)
    _instances: Dict[str, AdapterInstance] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _pool: Optional[ThreadPoolExecutor] = field(default=None, init=False, repr=False)
    _timer: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        self.logger = self.context.get_logger(self.__class__.__name__)
        if self.store is None:
            settings = self.context.settings.store
            path = settings.path or str(self.context.state_dir / "state.json")
            self.store = build_store(settings.backend, path=path, url=settings.url, prefix=settings.prefix)
        if self.dead_letters is None:
            self.dead_letters = JsonLinesDeadLetterSink(self.context.state_dir / "dead-letters")

    # ------------------------------------------------------------------ configuration

    def resolve_config(self, adapter_id: str) -> EffectiveConfig:
        """Merge catalogue layers, settings overlays and secrets into an :class:`EffectiveConfig`."""

        descriptor = self.registry.require(adapter_id)
        settings = self.context.settings
        instance, type_global, defaults = self.registry.layers_for(
            adapter_id,
            defaults=settings.defaults,
            type_overrides=settings.type_overrides(descriptor.adapter_type),
            instance_overrides=settings.instance_overrides(adapter_id),
        )
        instance.update(settings.secrets_for(adapter_id))
        return resolve(instance, type_global, defaults)

    def _sink_for(self, adapter_id: str) -> Any:
        if self.sink is not None:
            return self.sink
        return JsonLinesSink(self.context.state_dir / "inbox" / f"{adapter_id}.jsonl")

    def _build(self, descriptor: AdapterDescriptor, config: EffectiveConfig, *, transport: Optional[Transport] = None, leases: Optional[ConnectionLeaseManager] = None) -> AdapterInstance:
        adapter_id = descriptor.adapter_id
        factory = self.transports.get(descriptor.adapter_type)
        if factory is None:
            raise ConfigError(f"No transport registered for adapter type '{descriptor.adapter_type}'.")
        transport = transport or factory(config)
        budget = ErrorBudget.from_config(adapter_id, config, store=self.store, clock=self.clock)
        breaker = CircuitBreaker(config.circuit_breaker_threshold, config.circuit_breaker_reset_ms / 1000.0, clock=self.clock) if config.circuit_breaker_threshold > 0 else None
        retry = RetryPolicy.from_config(config, adapter_id=adapter_id, budget=budget, breaker=breaker, sleep=self.sleep)
        leases = leases or ConnectionLeaseManager.from_config(transport, config, adapter_id=adapter_id)
        retention = config.dedup_retention_ms / 1000.0
        instance = AdapterInstance(descriptor=descriptor, config=config, transport=transport, leases=leases, retry=retry, budget=budget)

        if descriptor.direction == AdapterDirection.INBOUND:
            if config.enable_duplicate_handling:
                instance.dedup = DedupIndex(self.store, adapter_id, retention_seconds=retention)
            instance.scheduler = PollingScheduler(
                adapter_id,
                transport,
                leases,
                self._sink_for(adapter_id),
                CursorStore(self.store),
                retry,
                config=config,
                dedup=instance.dedup,
                dead_letters=self.dead_letters,
                clock=self.clock,
            )
        elif descriptor.direction == AdapterDirection.OUTBOUND:
            if config.idempotent:
                instance.dedup = DedupIndex(self.store, adapter_id, retention_seconds=retention)
            instance.rate_limiter = RateLimiter.from_config(config)
            instance.executor = DeliveryExecutor(
                adapter_id,
                transport,
                leases,
                retry,
                config=config,
                rate_limiter=instance.rate_limiter,
                dedup=instance.dedup,
                dead_letters=self.dead_letters,
                clock=self.clock,
            )
        else:
            raise ValueError(f"Unhandled adapter direction: {descriptor.direction!r}")
        return instance

    # ------------------------------------------------------------------ lifecycle

    def _require_usable(self, adapter_id: str) -> AdapterDescriptor:
        descriptor = self.registry.require(adapter_id)
        if descriptor.status == AdapterStatus.BLOCKED:
            raise AdapterDisabled(f"Adapter '{adapter_id}' is blocked: {descriptor.blocked_reason}")
        if not self.context.is_enabled(adapter_id):
            raise AdapterDisabled(f"Adapter '{adapter_id}' is disabled in the current execution context.")
        return descriptor

    def activate(self, adapter_id: str, *, start: bool = False) -> AdapterInstance:
        """
        Resolve configuration and wire a fresh instance, replacing any previous activation.

        With ``start`` the activation-time options (``resetIncrementalOnStart``,
        pool warm-up) are applied; inspection paths such as ``status`` and
        ``verify`` leave persisted state untouched.
        """

        descriptor = self._require_usable(adapter_id)
        config = self.resolve_config(adapter_id)
        instance = self._build(descriptor, config)
        if instance.scheduler is not None:
            instance.next_fire = self.clock()
        with self._lock:
            previous = self._instances.pop(adapter_id, None)
            if previous is not None:
                # A tick still running on the old instance keeps the new one from dispatching.
                instance.future = previous.future
            self._instances[adapter_id] = instance
        if previous is not None:
            self._shutdown(previous)
        instance.leases.start_reaper()
        if start:
            self._start_instance(instance)
        self.logger.info("Adapter activated", extra={"adapter_id": adapter_id, "state": instance.status().get("state")})
        return instance

    def _start_instance(self, instance: AdapterInstance) -> None:
        if instance.started:
            return
        instance.started = True
        if instance.scheduler is not None:
            instance.scheduler.activate()
        self._warm(instance)

    def _warm(self, instance: AdapterInstance) -> None:
        try:
            opened = instance.leases.warm()
        except (AdapterError, OSError) as exc:
            self.logger.warning("Pool warm-up failed; sessions open on demand", extra={"adapter_id": instance.adapter_id, "error": str(exc)})
        else:
            if opened:
                self.logger.debug("Pool warmed", extra={"adapter_id": instance.adapter_id, "records": opened})

    def _instance(self, adapter_id: str, *, start: bool = False) -> AdapterInstance:
        with self._lock:
            instance = self._instances.get(adapter_id)
        if instance is None:
            return self.activate(adapter_id, start=start)
        if start:
            self._start_instance(instance)
        return instance

    def _shutdown(self, instance: AdapterInstance) -> None:
        if instance.busy:
            done, _ = wait_for_futures([instance.future], timeout=instance.config.operation_timeout)
            if not done:
                self.logger.warning("Adapter work still running at shutdown", extra={"adapter_id": instance.adapter_id})
        if instance.executor is not None and (instance.executor.open_count() or instance.executor.pending_count()):
            outcome = instance.executor.flush()
            if outcome.pending:
                self.logger.warning("Adapter stopped with undelivered records", extra={"adapter_id": instance.adapter_id, "records": outcome.pending})
        instance.leases.close(timeout=instance.config.connection_timeout)

    def deactivate(self, adapter_id: str) -> bool:
        with self._lock:
            instance = self._instances.pop(adapter_id, None)
        if instance is None:
            return False
        self._shutdown(instance)
        self.logger.info("Adapter deactivated", extra={"adapter_id": adapter_id})
        return True

    def reconfigure(self, adapter_id: str) -> AdapterInstance:
        """
        Re-resolve configuration for an active adapter.

        When only contract options changed, the transport is kept and its pool is
        drained and resized in place; a change of transport options rebuilds the
        instance from scratch.
        """

        with self._lock:
            current = self._instances.get(adapter_id)
        if current is None:
            return self.activate(adapter_id)
        config = self.resolve_config(adapter_id)
        if dict(config.transport_options) != dict(current.config.transport_options):
            instance = self.activate(adapter_id)
            if current.started:
                instance.started = True
                self._warm(instance)
            return instance
        if current.executor is not None:
            current.executor.flush()
        current.leases.reconfigure(config, timeout=config.connection_timeout)
        instance = self._build(current.descriptor, config, transport=current.transport, leases=current.leases)
        instance.next_fire = current.next_fire
        instance.started = current.started
        with self._lock:
            instance.future = current.future
            self._instances[adapter_id] = instance
        self.logger.info("Adapter reconfigured", extra={"adapter_id": adapter_id})
        return instance

    # ------------------------------------------------------------------ operations

    def tick(self, adapter_id: str) -> PollOutcome:
        instance = self._instance(adapter_id, start=True)
        if instance.scheduler is None:
            raise AdapterError(f"Adapter '{adapter_id}' is not an inbound adapter.")
        if instance.busy:
            return PollOutcome(TickStatus.SKIPPED_BUSY)
        now = self.clock()
        outcome = instance.scheduler.tick(now)
        instance.next_fire = instance.scheduler.next_fire_time(now)
        return outcome

    def submit(self, adapter_id: str, record: Record) -> DeliveryOutcome:
        instance = self._instance(adapter_id, start=True)
        if instance.executor is None:
            raise AdapterError(f"Adapter '{adapter_id}' is not an outbound adapter.")
        return instance.executor.submit(record)

    def flush(self, adapter_id: str) -> DeliveryOutcome:
        instance = self._instance(adapter_id, start=True)
        if instance.executor is None:
            raise AdapterError(f"Adapter '{adapter_id}' is not an outbound adapter.")
        return instance.executor.flush()

    def ingest_webhook(self, adapter_id: str, headers: Mapping[str, str], body: bytes, *, delivery_id: Optional[str] = None) -> WebhookResult:
        """Verify and hand off a webhook delivery addressed to an inbound adapter."""

        instance = self._instance(adapter_id)
        if instance.descriptor.direction != AdapterDirection.INBOUND:
            raise AdapterError(f"Adapter '{adapter_id}' does not accept webhooks.")
        if instance.budget.disabled:
            raise AdapterDisabled(f"Adapter '{adapter_id}' is disabled by its error budget.")
        secret = instance.config.option("webhookSecret")
        if not secret:
            raise ConfigError(f"Adapter '{adapter_id}' has no webhookSecret configured.")
        ingestor = WebhookIngestor(adapter_id, secret, self._sink_for(adapter_id), config=instance.config, dedup=instance.dedup, clock=self.clock)
        return ingestor.ingest(headers, body, delivery_id=delivery_id)

    def verify(self, adapter_id: str) -> VerificationResult:
        """Open a lease and run the transport's liveness check."""

        descriptor = self.registry.get(adapter_id)
        if descriptor is None:
            raise AdapterError(f"Adapter '{adapter_id}' is not registered.")
        if descriptor.status == AdapterStatus.BLOCKED:
            return VerificationResult(success=False, message=f"Adapter '{adapter_id}' is blocked: {descriptor.blocked_reason}")
        config = self.resolve_config(adapter_id)
        if self.context.options.dry_run:
            return VerificationResult(
                success=True,
                message=f"Adapter '{adapter_id}' configuration resolved (dry-run; transport not opened).",
                details={"type": descriptor.adapter_type, "direction": descriptor.direction.value},
            )

        instance = self._instance(adapter_id)
        try:
            with instance.leases.lease(timeout=config.connection_timeout) as lease:
                healthy = instance.transport.test_connection(lease.session)
        except AdapterError as exc:
            return VerificationResult(success=False, message=f"Connection failed: {exc}", details={"error_class": exc.error_class.value})
        except OSError as exc:
            return VerificationResult(success=False, message=f"Connection failed: {exc}", details={"error_class": "connection"})
        if not healthy:
            return VerificationResult(success=False, message=f"Adapter '{adapter_id}' failed its connection test.", details=instance.leases.stats())
        return VerificationResult(success=True, message=f"Adapter '{adapter_id}' is reachable.", details=instance.leases.stats())

    def rearm(self, adapter_id: str) -> None:
        instance = self._instance(adapter_id)
        if instance.scheduler is not None:
            instance.scheduler.rearm()
        if instance.executor is not None:
            instance.executor.rearm()
        self.logger.info("Adapter re-armed", extra={"adapter_id": adapter_id, "state": "idle"})

    def reset_cursor(self, adapter_id: str, cursor: Optional[Cursor] = None) -> None:
        descriptor = self.registry.require(adapter_id)
        if descriptor.direction != AdapterDirection.INBOUND:
            raise AdapterError(f"Adapter '{adapter_id}' has no cursor.")
        CursorStore(self.store).reset(adapter_id, cursor)
        self.logger.warning("Cursor reset by operator", extra={"adapter_id": adapter_id, "cursor": str(cursor) if cursor else None})

    def status(self) -> List[Dict[str, Any]]:
        with self._lock:
            instances = list(self._instances.values())
        return [instance.status() for instance in instances]

    # ------------------------------------------------------------------ scheduling

    def start(self, adapter_ids: Optional[List[str]] = None) -> None:
        """Activate adapters and start the timer thread."""

        targets = adapter_ids or [descriptor.adapter_id for descriptor in self.registry.iter_enabled() if self.context.is_enabled(descriptor.adapter_id)]
        for adapter_id in targets:
            try:
                self.activate(adapter_id, start=True)
            except AdapterError as exc:
                self.logger.error("Adapter activation failed", extra={"adapter_id": adapter_id, "error": str(exc)})
        if self._timer is not None:
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="adapter")
        self._timer = threading.Thread(target=self._loop, name="adapter-timer", daemon=True)
        self._timer.start()
        self.logger.info("Adapter runtime started", extra={"records": len(targets)})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout=timeout)
            self._timer = None
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        with self._lock:
            adapter_ids = list(self._instances)
        for adapter_id in adapter_ids:
            self.deactivate(adapter_id)
        self.logger.info("Adapter runtime stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            self.logger.info("Interrupted; shutting down")
        finally:
            self.stop()

    def _dispatch(self, instance: AdapterInstance, work: Callable[[], Any]) -> None:
        if self._pool is None:
            return
        if instance.future is not None and not instance.future.done():
            return
        instance.future = self._pool.submit(work)
        instance.future.add_done_callback(self._report)

    def _report(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            self.logger.error("Scheduled adapter work failed", extra={"error": str(exc)})

    def run_due(self, now: Optional[float] = None) -> float:
        """Dispatch due ticks and flushes; returns seconds until the next scheduled tick."""

        moment = self.clock() if now is None else now
        wait = 1.0
        with self._lock:
            instances = list(self._instances.values())
        for instance in instances:
            if instance.scheduler is not None and instance.config.enable_polling:
                if moment >= instance.next_fire:
                    scheduler = instance.scheduler
                    instance.next_fire = scheduler.next_fire_time(moment)
                    self._dispatch(instance, lambda scheduler=scheduler, moment=moment: scheduler.tick(moment))
                wait = min(wait, max(0.0, instance.next_fire - moment))
            if instance.executor is not None:
                executor = instance.executor
                self._dispatch(instance, lambda executor=executor, moment=moment: executor.flush_due(moment))
        return wait

    def _loop(self) -> None:
        while not self._stop.is_set():
            wait = self.run_due()
            self._stop.wait(max(wait, 0.05))
