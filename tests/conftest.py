"""Shared fixtures for the gateway and extraction test suite."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

import pytest

from brf_extract.models.schemas import (
    CallRequest,
    CallResponse,
    ChatMessage,
    Choice,
    CredentialHandle,
    Usage,
)
from brf_extract.services.credentials import InMemoryCredentialPool, SecretCache, SecretCipher
from brf_extract.services.gateway import DispatchGateway, GatewayPolicy
from brf_extract.services.ledger import InMemoryLedger
from brf_extract.services.notifier import LogNotifier
from brf_extract.services.pricing import StaticPriceOracle

TEST_MODEL = "test/model"
TENANT = "tenant-1"

# USD per 1M tokens: 1e-6 per input token, 2e-6 per output token
TEST_PRICES = {TEST_MODEL: (1.0, 2.0)}

# 1x1 transparent PNG
PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


def completion(
    content: str = "{}",
    input_tokens: Optional[int] = 50,
    output_tokens: int = 20,
    finish_reason: str = "stop",
    model: str = TEST_MODEL,
    provider_cost: Optional[float] = None,
) -> CallResponse:
    """A transport-level response as the inference endpoint would return it."""
    usage = None
    if input_tokens is not None:
        usage = Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )
    return CallResponse(
        id="gen-1",
        model=model,
        choices=[Choice(content=content, finish_reason=finish_reason)],
        usage=usage,
        provider_cost=provider_cost,
    )


def text_request(chars: int = 400, max_output_tokens: Optional[int] = 100, model: str = TEST_MODEL) -> CallRequest:
    return CallRequest(
        model=model,
        messages=(ChatMessage(content="x" * chars),),
        max_output_tokens=max_output_tokens,
    )


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


TransportItem = Union[CallResponse, Exception, Callable[[], Awaitable[CallResponse]]]


class FakeTransport:
    """Inference transport with a FIFO queue of responses, errors or coroutines."""

    def __init__(self) -> None:
        self._queue: List[TransportItem] = []
        self.calls: List[Tuple[CallRequest, str]] = []
        self.default: Optional[TransportItem] = None

    def enqueue(self, *items: TransportItem) -> None:
        self._queue.extend(items)

    async def complete(self, request: CallRequest, api_key: str) -> CallResponse:
        self.calls.append((request, api_key))
        if self._queue:
            item = self._queue.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise RuntimeError("FakeTransport was called without a queued response")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item()
        return item

    @property
    def api_keys(self) -> List[str]:
        return [key for _, key in self.calls]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(SecretCipher.generate_key())


@pytest.fixture
def pool(cipher: SecretCipher, clock: FakeClock) -> InMemoryCredentialPool:
    return InMemoryCredentialPool(
        [
            CredentialHandle(id="cred-a", encrypted_secret=cipher.encrypt("sk-a")),
            CredentialHandle(id="cred-b", encrypted_secret=cipher.encrypt("sk-b")),
        ],
        clock=clock,
    )


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger.from_balances({TENANT: 10.0})


@pytest.fixture
def oracle() -> StaticPriceOracle:
    return StaticPriceOracle(models=dict(TEST_PRICES))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_gateway(pool, ledger, oracle, transport, cipher, notifier, sleep):
    """Gateway factory; keyword arguments override ``GatewayPolicy`` fields."""

    def _make(**overrides: Any) -> DispatchGateway:
        policy = GatewayPolicy(retry_jitter=0.0, attempt_timeout_seconds=5.0)
        for name, value in overrides.items():
            setattr(policy, name, value)
        return DispatchGateway(
            pool=pool,
            ledger=ledger,
            oracle=oracle,
            transport=transport,
            secrets=SecretCache(decrypt=cipher.decrypt, ttl=300.0),
            notifier=notifier,
            policy=policy,
            sleep=sleep,
        )

    return _make


@pytest.fixture
def gateway(make_gateway) -> DispatchGateway:
    return make_gateway()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        loop = asyncio.new_event_loop()
        try:
            signature = inspect.signature(pyfuncitem.obj)
            kwargs = {
                name: pyfuncitem.funcargs[name]
                for name in signature.parameters
                if name in pyfuncitem.funcargs
            }
            loop.run_until_complete(pyfuncitem.obj(**kwargs))
        finally:
            loop.close()
        return True
    return None
