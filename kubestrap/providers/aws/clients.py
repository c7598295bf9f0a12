"""AWS client factories with dependency injection.

Provides typed client factories that can be injected into the provider.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from injector import Module, provider, singleton

from .config import AWS


class _ClientFactory:
    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class EC2ClientFactory(_ClientFactory):
    """EC2 client factory."""


class SSMClientFactory(_ClientFactory):
    """SSM client factory, used to resolve the Ubuntu AMI."""


def _factory(session: aioboto3.Session, service: str, region: str) -> Callable[[], AbstractAsyncContextManager[Any]]:
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        async with session.client(service, region_name=region) as client:
            yield client

    return factory


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([AWSModule(AWS(region="us-east-1"))])
        >>> ec2 = injector.get(EC2ClientFactory)
        >>> async with ec2() as client:
        ...     await client.describe_vpcs()
    """

    def __init__(self, config: AWS) -> None:
        self._config = config

    @singleton
    @provider
    def provide_config(self) -> AWS:
        return self._config

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: AWS) -> EC2ClientFactory:
        return EC2ClientFactory(_factory(session, "ec2", config.region))

    @singleton
    @provider
    def provide_ssm(self, session: aioboto3.Session, config: AWS) -> SSMClientFactory:
        return SSMClientFactory(_factory(session, "ssm", config.region))


__all__ = [
    "AWSModule",
    "EC2ClientFactory",
    "SSMClientFactory",
]
