from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI
from pydantic import BaseModel

import relaymq.infrastructure.messaging.rabbitmq.connection_provider as connection_provider_module
from relaymq.config.settings import ConsumerConfig, ServerEndpoint
from relaymq.routers.health import health_router
from tests.fakes import FakeBroker


class OrderPlaced(BaseModel):
    """Message type used across the tests."""

    order_id: str
    amount: int = 0


def make_endpoint(**overrides: Any) -> ServerEndpoint:
    values: dict[str, Any] = {
        "user_name": "guest",
        "password": "guest",
        "virtual_host": "/",
        "hosts": ["localhost"],
        "client_id": "orders-svc",
        "reconnect_count": 3,
        "reconnect_interval_seconds": 0.01,
    }
    values.update(overrides)
    return ServerEndpoint(**values)


def make_consumer_config(**overrides: Any) -> ConsumerConfig:
    values: dict[str, Any] = {"queue": {"name": "orders"}}
    values.update(overrides)
    return ConsumerConfig.model_validate(values)


@pytest.fixture()
def broker(monkeypatch) -> FakeBroker:
    fake = FakeBroker()
    monkeypatch.setattr(connection_provider_module.aio_pika, "connect_robust", fake.connect_robust)
    return fake


@pytest.fixture()
def endpoint() -> ServerEndpoint:
    return make_endpoint()


@pytest.fixture()
def test_app() -> FastAPI:
    app = FastAPI()
    app.include_router(health_router)
    return app
