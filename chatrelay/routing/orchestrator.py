"""
chatrelay - Request Orchestrator

Drives one logical request across candidate accounts:

    SELECT_ACCOUNT -> OPEN_ATTEMPT -> STREAMING -> SUCCESS
                                             +-> RETRYABLE_FAILURE -> OPEN_ATTEMPT (next account)
                                             +-> FATAL_FAILURE

Quota, auth and transport failures move on to the next account, but only
when load balancing is enabled for the provider. Anything else propagates
unchanged.

Once any event has reached the caller no other account is tried: the
caller would otherwise see content from two different responses. This
follows the same rule as the fallback chain ("no semantic drift") and can
only be relaxed through configuration.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from ..adapters.base import StreamTransport
from ..core.config import GatewaySettings, ThinkingMarkers, get_settings
from ..core.errors import (
    AuthError,
    NoAvailableAccountsError,
    QuotaError,
    RelayError,
    RequestCancelledError,
    TransportError,
    classify_exception,
    is_failover_eligible,
)
from ..core.models import Account, Credentials, RequestContext
from ..observability.logging import TimedOperation, get_logger, request_log_context
from ..observability.metrics import MetricsCollector, get_metrics
from ..streaming.events import ResponseEvent, UsageReport
from ..streaming.normalizer import StreamNormalizer
from .accounts import AccountRegistry
from .affinity import RotationStore
from .selector import AccountSelector, SelectionResult

logger = get_logger(__name__)

EventCallback = Callable[[ResponseEvent], Union[None, Awaitable[None]]]


class AttemptPhase(str, Enum):
    """Where an attempt ended up."""
    SELECT_ACCOUNT = "select_account"
    OPEN_ATTEMPT = "open_attempt"
    STREAMING = "streaming"
    SUCCESS = "success"
    SKIPPED = "skipped"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class ContentPhase(str, Enum):
    """
    Request phases for failover eligibility.

    PRE_CONTENT: Nothing forwarded yet - failover allowed
    CONTENT_STARTED: Events forwarded - no failover
    COMPLETED: Request finished
    """
    PRE_CONTENT = "pre_content"
    CONTENT_STARTED = "content_started"
    COMPLETED = "completed"


class RequestPhaseTracker:
    """
    Tracks whether the caller has seen any event of this request.

    Shared by every attempt of the request.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.phase = ContentPhase.PRE_CONTENT
        self.started_at = time.perf_counter()
        self.content_started_at: Optional[float] = None
        self.events_delivered: int = 0

    def can_fail_over(self) -> bool:
        return self.phase == ContentPhase.PRE_CONTENT

    def mark_event_delivered(self):
        if self.phase == ContentPhase.PRE_CONTENT:
            self.phase = ContentPhase.CONTENT_STARTED
            self.content_started_at = time.perf_counter()
        self.events_delivered += 1

    def mark_completed(self):
        self.phase = ContentPhase.COMPLETED

    @property
    def time_to_first_event(self) -> Optional[float]:
        if self.content_started_at is None:
            return None
        return self.content_started_at - self.started_at


@dataclass
class OrchestratorConfig:
    """Configuration for attempts."""
    connect_timeout: float = 10.0
    read_timeout: float = 120.0
    thinking_markers: ThinkingMarkers = ThinkingMarkers()

    # Fail over even after events were forwarded (callers then see mixed output)
    allow_retry_after_content: bool = False

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "OrchestratorConfig":
        return cls(
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
            thinking_markers=settings.thinking_markers,
            allow_retry_after_content=settings.allow_retry_after_content,
        )


@dataclass
class AttemptState:
    """One account/credential pairing in flight. Discarded after the attempt."""
    account: Account
    credentials: Credentials
    number: int
    normalizer: StreamNormalizer
    phase: AttemptPhase = AttemptPhase.OPEN_ATTEMPT


@dataclass
class AttemptRecord:
    """Record of a finished attempt."""
    account_id: str
    number: int
    phase: AttemptPhase
    error_code: Optional[str] = None
    duration_ms: int = 0


@dataclass
class RequestOutcome:
    """Result of a successful request."""
    request_id: str
    account_id: str
    attempts: List[AttemptRecord] = field(default_factory=list)
    switched: bool = False
    events_delivered: int = 0
    usage: Optional[UsageReport] = None
    duration_ms: int = 0


class RequestOrchestrator:
    """
    Serves requests by streaming from one account at a time.

    Usage:
        orchestrator = RequestOrchestrator(registry, transport)

        async def on_event(event):
            ...

        outcome = await orchestrator.handle_request(context, on_event)
    """

    def __init__(
        self,
        registry: AccountRegistry,
        transport: StreamTransport,
        selector: Optional[AccountSelector] = None,
        rotation: Optional[RotationStore] = None,
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.registry = registry
        self.transport = transport
        self.selector = selector or AccountSelector(registry, rotation)
        self.rotation = self.selector.rotation
        self.config = config or OrchestratorConfig.from_settings(get_settings())
        self.metrics = metrics or get_metrics()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle_request(self, context: RequestContext, on_event: EventCallback) -> RequestOutcome:
        """
        Stream one request to ``on_event``.

        Resolves once End has been delivered. Raises the classified error of
        the last attempt when no account succeeds, RequestCancelledError on
        cancellation, and NoAvailableAccountsError when there is nobody to ask.
        """
        started = time.perf_counter()
        outcome_label = "error"
        provider = context.provider_key

        with request_log_context(
            request_id=context.request_id,
            provider=provider,
            model=context.model_id,
        ), self.metrics.track_active_request(provider):
            try:
                outcome = await self._run(context, on_event)
                outcome_label = "success"
                outcome.duration_ms = int((time.perf_counter() - started) * 1000)
                return outcome
            except (RequestCancelledError, asyncio.CancelledError):
                outcome_label = "cancelled"
                logger.info("Request cancelled")
                raise
            except RelayError as e:
                outcome_label = e.kind.value
                logger.warning("Request failed", error_code=e.error.code, error=str(e))
                raise
            finally:
                self.metrics.record_request(
                    provider,
                    context.model_id,
                    outcome_label,
                    time.perf_counter() - started,
                )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, context: RequestContext, on_event: EventCallback) -> RequestOutcome:
        provider = context.provider_key
        context.cancel.raise_if_cancelled(provider, context.request_id)

        # SELECT_ACCOUNT
        selection = self.selector.select(provider, context.model_id)
        if not selection.candidates:
            raise NoAvailableAccountsError(provider, context.model_id, context.request_id)

        logger.info(
            "Serving request",
            candidates=selection.candidate_ids,
            load_balance=selection.load_balance,
        )

        tracker = RequestPhaseTracker(context.request_id)
        attempts: List[AttemptRecord] = []
        last_error: Optional[RelayError] = None
        failed_over = False

        for number, account in enumerate(selection.candidates, start=1):
            context.cancel.raise_if_cancelled(provider, context.request_id)
            has_next = number < len(selection.candidates)

            with request_log_context(account_id=account.id, attempt=number):
                # OPEN_ATTEMPT
                credentials, reason = await self._resolve_credentials(context, account)
                if credentials is None:
                    last_error = AuthError(
                        provider,
                        f"No credentials available for account {account.id}: {reason}",
                        account_id=account.id,
                        http_status=None,
                        code="missing_credentials",
                        request_id=context.request_id,
                    )
                    attempts.append(AttemptRecord(account.id, number, AttemptPhase.SKIPPED, "missing_credentials"))
                    logger.warning("Skipping account without credentials", reason=reason)
                    continue

                attempt = AttemptState(
                    account=account,
                    credentials=credentials,
                    number=number,
                    normalizer=StreamNormalizer(provider, context.model_id, self.config.thinking_markers),
                )
                attempt_started = time.perf_counter()

                try:
                    usage = await self._run_attempt(context, attempt, on_event, tracker)
                except RequestCancelledError:
                    self.metrics.record_attempt(provider, "cancelled")
                    raise
                except RelayError as error:
                    record = AttemptRecord(
                        account.id,
                        number,
                        AttemptPhase.RETRYABLE_FAILURE,
                        error.error.code,
                        int((time.perf_counter() - attempt_started) * 1000),
                    )
                    attempts.append(record)
                    self.metrics.record_attempt(provider, error.kind.value)
                    await self._apply_failure_side_effects(account, error)

                    if not self._may_fail_over(error, selection, tracker):
                        record.phase = AttemptPhase.FATAL_FAILURE
                        raise

                    last_error = error
                    failed_over = True
                    if has_next:
                        self.metrics.record_failover(provider, error.kind.value)
                        logger.warning(
                            "Attempt failed, trying next account",
                            error_code=error.error.code,
                            next_account_id=selection.candidates[number].id,
                        )
                    continue

                # SUCCESS
                tracker.mark_completed()
                attempts.append(AttemptRecord(
                    account.id,
                    number,
                    AttemptPhase.SUCCESS,
                    duration_ms=int((time.perf_counter() - attempt_started) * 1000),
                ))
                self.metrics.record_attempt(provider, "success")
                await self._record_success(context, account, switched=failed_over)
                if usage is not None:
                    self.metrics.record_tokens(provider, context.model_id, usage.prompt_tokens, usage.completion_tokens)

                return RequestOutcome(
                    request_id=context.request_id,
                    account_id=account.id,
                    attempts=attempts,
                    switched=failed_over,
                    events_delivered=tracker.events_delivered,
                    usage=usage,
                )

        # Exhausted
        if last_error is not None:
            raise last_error
        raise NoAvailableAccountsError(provider, context.model_id, context.request_id)

    async def _run_attempt(
        self,
        context: RequestContext,
        attempt: AttemptState,
        on_event: EventCallback,
        tracker: RequestPhaseTracker,
    ) -> Optional[UsageReport]:
        """Open one stream and forward its events. Returns the reported usage."""
        normalizer = attempt.normalizer
        body = context.build_body()

        with TimedOperation("stream_attempt", logger, log_level=logging.INFO):
            source = await self._transport_call(
                context,
                attempt,
                self.transport.open_stream(context.endpoint, attempt.credentials, body, account_id=attempt.account.id),
                self.config.connect_timeout,
            )
            attempt.phase = AttemptPhase.STREAMING

            async with source:
                while True:
                    delta = await self._transport_call(context, attempt, source.read(), self.config.read_timeout)
                    if delta is None:
                        break
                    for event in normalizer.feed(delta):
                        await self._deliver(context, event, on_event, tracker)

            for event in normalizer.finish():
                await self._deliver(context, event, on_event, tracker)

        attempt.phase = AttemptPhase.SUCCESS
        return normalizer.state.usage

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transport_call(
        self,
        context: RequestContext,
        attempt: AttemptState,
        awaitable: Awaitable[Any],
        timeout: Optional[float],
    ) -> Any:
        """
        Await a transport operation, racing it against cancellation and a timeout.

        Unclassified exceptions are classified against the attempt's account.
        """
        provider = context.provider_key
        if context.cancel.is_cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RequestCancelledError(provider, context.request_id)

        task = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(context.cancel.wait())
        try:
            done, _ = await asyncio.wait({task, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task in done:
            try:
                return task.result()
            except RelayError:
                raise
            except Exception as e:
                raise classify_exception(e, provider, attempt.account.id, context.request_id) from e

        if context.cancel.is_cancelled:
            raise RequestCancelledError(provider, context.request_id)

        phase = "connect" if attempt.phase == AttemptPhase.OPEN_ATTEMPT else "read"
        raise TransportError(
            provider,
            f"{provider} {phase} timed out after {timeout}s",
            timeout=True,
            account_id=attempt.account.id,
            request_id=context.request_id,
        )

    async def _deliver(
        self,
        context: RequestContext,
        event: ResponseEvent,
        on_event: EventCallback,
        tracker: RequestPhaseTracker,
    ):
        context.cancel.raise_if_cancelled(context.provider_key, context.request_id)

        first = tracker.can_fail_over()
        tracker.mark_event_delivered()
        if first and tracker.time_to_first_event is not None:
            self.metrics.record_time_to_first_event(context.provider_key, context.model_id, tracker.time_to_first_event)
        self.metrics.record_event(context.provider_key, event.kind.value)

        result = on_event(event)
        if inspect.isawaitable(result):
            await result

    async def _resolve_credentials(
        self,
        context: RequestContext,
        account: Account,
    ) -> Tuple[Optional[Credentials], str]:
        """Resolve credentials; failures are soft and reported as a reason."""
        try:
            credentials = await self.registry.get_credentials(account.id)
        except RelayError as e:
            return None, str(e)
        except Exception as e:
            logger.warning("Credential resolution failed", error=str(e), error_type=type(e).__name__)
            return None, f"{type(e).__name__}: {e}"

        context.cancel.raise_if_cancelled(context.provider_key, context.request_id)
        if credentials is None:
            return None, "not configured"
        return credentials, ""

    def _may_fail_over(
        self,
        error: RelayError,
        selection: SelectionResult,
        tracker: RequestPhaseTracker,
    ) -> bool:
        if not is_failover_eligible(error):
            return False
        if not selection.load_balance:
            return False
        if not tracker.can_fail_over() and not self.config.allow_retry_after_content:
            logger.warning("Not failing over: events were already delivered", error_code=error.error.code)
            return False
        return True

    async def _apply_failure_side_effects(self, account: Account, error: RelayError):
        if isinstance(error, AuthError):
            await self.registry.mark_expired(account.id)
        elif isinstance(error, QuotaError):
            self.registry.record_quota_exceeded(
                account.id,
                retry_after=error.error.retry_after,
                long_term=error.long_term,
            )

    async def _record_success(self, context: RequestContext, account: Account, switched: bool):
        self.rotation.record_used(context.provider_key, context.model_id, account.id)
        self.registry.record_success(account.id)
        if switched:
            await self.registry.set_sticky_assignment(context.provider_key, context.model_id, account.id)
            logger.info("Sticky account updated after failover")
