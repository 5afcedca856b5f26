# [Core: Dispatch Gateway]
"""
Dispatch Gateway: turns one logical call into a billed, retried,
safety-bounded request against the remote inference service.

Lifecycle of ``dispatch(tenant_id, request)``:
  1. Pre-flight: tenant feature flag and minimum balance (no network call)
  2. Conservative cost estimate: price oracle rates + markup + safety buffer
  3. Reservation through an atomic conditional decrement on the ledger
  4. Bounded retry loop with exponential backoff and jitter; rate-limited
     credentials are put in cooldown and the next attempt picks another one
  5. Actual cost from reported usage, then refund surplus / deduct shortfall
  6. Circuit breaker: actual > multiplier x reserved refunds everything,
     alerts the operator and fails the call

Every terminal outcome after the reservation writes exactly one usage-log
entry, and every failure after the reservation refunds it in full.
"""
from __future__ import annotations

import asyncio
import logging
import math
import random
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from brf_extract.config import settings
from brf_extract.models.schemas import CallRequest, CallResponse, CostIncident, UsageLogEntry
from brf_extract.services.credentials import (
    CredentialPool,
    InMemoryCredentialPool,
    SecretCache,
    SecretCipher,
)
from brf_extract.services.errors import (
    CostRunaway,
    FeatureDisabled,
    GatewayError,
    InsufficientBalance,
    RateLimited,
    RateLimitExhausted,
    TransientNetworkError,
)
from brf_extract.services.inference import InferenceTransport, OpenRouterTransport
from brf_extract.services.ledger import InMemoryLedger, Ledger
from brf_extract.services.notifier import LogNotifier, OperatorNotifier, WebhookNotifier
from brf_extract.services.pricing import PriceOracle, StaticPriceOracle

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


@dataclass
class GatewayPolicy:
    """Billing and retry knobs. Defaults come from ``settings``."""
    markup_percent: float = 20.0
    safety_buffer_percent: float = 25.0
    min_balance: float = 0.01
    default_output_tokens: int = 4096
    image_token_estimate: int = 1500
    circuit_breaker_multiplier: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.25
    attempt_timeout_seconds: float = 120.0
    rate_limit_cooldown_ms: int = 60_000

    @classmethod
    def from_settings(cls) -> "GatewayPolicy":
        return cls(
            markup_percent=settings.markup_percent,
            safety_buffer_percent=settings.safety_buffer_percent,
            min_balance=settings.min_balance,
            default_output_tokens=settings.default_output_tokens,
            image_token_estimate=settings.image_token_estimate,
            circuit_breaker_multiplier=settings.circuit_breaker_multiplier,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            retry_jitter=settings.retry_jitter,
            attempt_timeout_seconds=settings.attempt_timeout_seconds,
            rate_limit_cooldown_ms=settings.rate_limit_cooldown_ms,
        )

    @property
    def markup_factor(self) -> float:
        return 1 + self.markup_percent / 100


@dataclass
class CostEstimate:
    input_tokens: int
    output_tokens: int
    base_cost: float
    reserved: float


@dataclass
class _CallContext:
    """Mutable bookkeeping for one dispatch, used for the usage log."""
    tenant_id: str
    request: CallRequest
    estimate: CostEstimate
    log_id: str
    started: float
    attempts: int = 0
    credential_id: Optional[str] = None

    @property
    def reserved(self) -> float:
        return self.estimate.reserved

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class DispatchGateway:
    """
    Cost-aware dispatcher shared by every worker of every tenant.

    Usage:
        gateway = build_gateway()
        response = await gateway.dispatch("tenant-1", request)
    """

    def __init__(
        self,
        pool: CredentialPool,
        ledger: Ledger,
        oracle: PriceOracle,
        transport: InferenceTransport,
        secrets: SecretCache,
        notifier: Optional[OperatorNotifier] = None,
        policy: Optional[GatewayPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.pool = pool
        self.ledger = ledger
        self.oracle = oracle
        self.transport = transport
        self.secrets = secrets
        self.notifier = notifier or LogNotifier()
        self.policy = policy or GatewayPolicy.from_settings()
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ──────────────────────────────────────────────
    # Estimation
    # ──────────────────────────────────────────────

    def estimate(self, request: CallRequest) -> CostEstimate:
        """Conservative estimate of what ``request`` may cost, before any call."""
        p = self.policy
        input_tokens = math.ceil(request.text_length() / CHARS_PER_TOKEN)
        input_tokens += request.image_count() * p.image_token_estimate
        output_tokens = request.max_output_tokens or p.default_output_tokens
        base = self.oracle.cost(request.model, input_tokens, output_tokens).cost
        reserved = base * p.markup_factor * (1 + p.safety_buffer_percent / 100)
        return CostEstimate(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            base_cost=base,
            reserved=reserved,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        p = self.policy
        delay = min(p.retry_base_delay * (2 ** (attempt - 1)), p.retry_max_delay)
        return delay + delay * p.retry_jitter * self._rng.random()

    # ──────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────

    async def dispatch(self, tenant_id: str, request: CallRequest) -> CallResponse:
        account = await self.ledger.account(tenant_id)
        if account is None or not account.extraction_enabled:
            raise FeatureDisabled(f"Extraction is not enabled for tenant {tenant_id}")
        if account.balance < self.policy.min_balance:
            raise InsufficientBalance(
                f"Balance ${account.balance:.4f} is below the minimum ${self.policy.min_balance:.4f}",
                amount=self.policy.min_balance,
            )

        estimate = self.estimate(request)
        if not await self.ledger.decrement_if_sufficient(tenant_id, estimate.reserved):
            raise InsufficientBalance(
                f"Balance cannot cover the estimated ${estimate.reserved:.6f}",
                amount=estimate.reserved,
            )

        ctx = _CallContext(
            tenant_id=tenant_id,
            request=request,
            estimate=estimate,
            log_id=str(uuid.uuid4()),
            started=time.monotonic(),
        )
        logger.debug(
            "Reserved $%.6f for tenant %s (model=%s, ~%d in / %d out tokens)",
            estimate.reserved, tenant_id, request.model, estimate.input_tokens, estimate.output_tokens,
        )

        try:
            response = await self._attempt_with_retries(ctx)
        except GatewayError as e:
            await self._refund_and_log_failure(ctx, e.code, e.message)
            raise
        except asyncio.CancelledError:
            await self._refund_and_log_failure(ctx, "CANCELLED", "Call cancelled")
            raise
        except Exception as e:
            await self._refund_and_log_failure(ctx, "INTERNAL_ERROR", str(e))
            raise

        return await self._settle(ctx, response)

    async def _attempt_with_retries(self, ctx: _CallContext) -> CallResponse:
        p = self.policy
        max_attempts = p.max_retries + 1
        last_error: Optional[GatewayError] = None

        for attempt in range(1, max_attempts + 1):
            ctx.attempts = attempt
            credential = await self.pool.acquire(ctx.tenant_id)
            if credential is None:
                last_error = RateLimited("No credential available: pool exhausted or cooling down")
            else:
                ctx.credential_id = credential.id
                try:
                    api_key = self.secrets.get(credential.encrypted_secret)
                    return await asyncio.wait_for(
                        self.transport.complete(ctx.request, api_key),
                        timeout=p.attempt_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    last_error = TransientNetworkError(
                        f"Attempt timed out after {p.attempt_timeout_seconds:.1f}s"
                    )
                except RateLimited as e:
                    last_error = e
                    cooldown_ms = int(e.retry_after * 1000) if e.retry_after else p.rate_limit_cooldown_ms
                    await self.pool.cooldown(credential.id, cooldown_ms)
                except TransientNetworkError as e:
                    last_error = e

            if attempt < max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Dispatch {ctx.log_id} attempt {attempt}/{max_attempts} failed "
                    f"({last_error.code}): {last_error.message}. Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)

        if isinstance(last_error, RateLimited):
            raise RateLimitExhausted(
                f"Rate limited on all {max_attempts} attempts: {last_error.message}"
            ) from last_error
        raise last_error

    async def _settle(self, ctx: _CallContext, response: CallResponse) -> CallResponse:
        """Compute actual cost, apply the circuit breaker and reconcile the reservation."""
        p = self.policy
        usage = response.usage
        if usage is None or (usage.input_tokens + usage.output_tokens == 0 and usage.total_tokens > 0):
            logger.warning(f"Dispatch {ctx.log_id}: response carried no usable usage, charging the estimate ceiling")
            input_tokens = ctx.estimate.input_tokens
            output_tokens = ctx.estimate.output_tokens
        else:
            input_tokens = usage.input_tokens
            output_tokens = usage.output_tokens
        base_cost = self.oracle.cost(ctx.request.model, input_tokens, output_tokens).cost
        if response.provider_cost is not None and response.provider_cost > base_cost:
            # Upstream-reported cost is a floor on the charge
            logger.info(
                "Dispatch %s: provider cost $%.6f exceeds priced $%.6f",
                ctx.log_id, response.provider_cost, base_cost,
            )
            base_cost = response.provider_cost
        actual = base_cost * p.markup_factor

        if actual > p.circuit_breaker_multiplier * ctx.reserved:
            await self._trip_breaker(ctx, actual, input_tokens, output_tokens)

        if actual < ctx.reserved:
            await self.ledger.increment(ctx.tenant_id, ctx.reserved - actual)
        elif actual > ctx.reserved:
            shortfall = actual - ctx.reserved
            if not await self.ledger.decrement_if_sufficient(ctx.tenant_id, shortfall):
                message = f"Balance cannot cover the shortfall of ${shortfall:.6f}"
                await self._refund_and_log_failure(ctx, InsufficientBalance.code, message)
                raise InsufficientBalance(message, amount=shortfall)

        await self._write_log(
            ctx,
            success=True,
            cost=actual,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        if response.truncated:
            logger.warning(f"Dispatch {ctx.log_id}: output hit the token cap (finish_reason=length)")

        logger.info(
            f"Dispatch {ctx.log_id} ok: tenant={ctx.tenant_id} model={ctx.request.model} "
            f"tokens={input_tokens}+{output_tokens} cost=${actual:.6f} reserved=${ctx.reserved:.6f} "
            f"attempts={ctx.attempts}"
        )
        return response.model_copy(
            update={
                "cost": actual,
                "reserved": ctx.reserved,
                "credential_id": ctx.credential_id,
                "latency_ms": ctx.elapsed_ms(),
                "attempts": ctx.attempts,
            }
        )

    async def _trip_breaker(
        self, ctx: _CallContext, actual: float, input_tokens: int, output_tokens: int
    ) -> None:
        p = self.policy
        message = (
            f"Actual cost ${actual:.6f} exceeds {p.circuit_breaker_multiplier:.0f}x "
            f"the reservation ${ctx.reserved:.6f}"
        )
        logger.error(f"Circuit breaker tripped for dispatch {ctx.log_id}: {message}")
        await self.ledger.increment(ctx.tenant_id, ctx.reserved)
        await self._write_log(
            ctx,
            success=False,
            cost=0.0,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error_code=CostRunaway.code,
            error_message=message,
        )
        incident = CostIncident(
            log_id=ctx.log_id,
            tenant_id=ctx.tenant_id,
            model=ctx.request.model,
            credential_id=ctx.credential_id,
            reserved=ctx.reserved,
            actual=actual,
            multiplier=p.circuit_breaker_multiplier,
        )
        try:
            await self.notifier.notify(incident)
        except Exception as e:
            logger.error(f"Operator notification failed for incident {ctx.log_id}: {e}")
        raise CostRunaway(message, reserved=ctx.reserved, actual=actual)

    # ──────────────────────────────────────────────
    # Usage log
    # ──────────────────────────────────────────────

    async def _refund_and_log_failure(self, ctx: _CallContext, code: str, message: str) -> None:
        await self.ledger.increment(ctx.tenant_id, ctx.reserved)
        logger.error(f"Dispatch {ctx.log_id} failed after {ctx.attempts} attempt(s) ({code}): {message}")
        await self._write_log(ctx, success=False, cost=0.0, error_code=code, error_message=message)

    async def _write_log(
        self,
        ctx: _CallContext,
        success: bool,
        cost: float,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        latency_ms = ctx.elapsed_ms()
        entry = UsageLogEntry(
            log_id=ctx.log_id,
            tenant_id=ctx.tenant_id,
            credential_id=ctx.credential_id,
            model=ctx.request.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost=cost,
            reserved=ctx.reserved,
            success=success,
            error_code=error_code,
            error_message=error_message,
            latency_ms=latency_ms,
            attempts=ctx.attempts,
        )
        await self.ledger.append_usage_log(entry)
        if ctx.credential_id is not None:
            await self.pool.record_usage(
                ctx.credential_id,
                ctx.log_id,
                cost,
                success,
                entry.total_tokens,
                ctx.request.model,
                latency_ms,
            )


def build_gateway(
    ledger: Optional[Ledger] = None,
    transport: Optional[InferenceTransport] = None,
) -> DispatchGateway:
    """Assemble a gateway from ``settings`` (in-memory pool and ledger)."""
    cipher = SecretCipher(settings.credential_encryption_key)
    if settings.operator_webhook_url:
        notifier: OperatorNotifier = WebhookNotifier(settings.operator_webhook_url)
    else:
        notifier = LogNotifier()
    return DispatchGateway(
        pool=InMemoryCredentialPool.from_mapping(settings.pool_credentials),
        ledger=ledger or InMemoryLedger.from_balances(settings.tenant_balances),
        oracle=StaticPriceOracle(),
        transport=transport or OpenRouterTransport(),
        secrets=SecretCache(decrypt=cipher.decrypt, ttl=settings.secret_cache_ttl_seconds),
        notifier=notifier,
        policy=GatewayPolicy.from_settings(),
    )
