"""AWS client factories with dependency injection.

Components hold a factory and open a client per operation:

    async with self._ec2() as ec2:
        await ec2.describe_vpcs(...)
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from injector import Module, provider, singleton

from stratus.definition import AwsOptions

# =============================================================================
# Client Type
# =============================================================================

type Client[T] = Callable[[], AbstractAsyncContextManager[T]]
"""Factory that returns an async context manager for a client."""


# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class _ClientFactory:
    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class EC2ClientFactory(_ClientFactory):
    """Wrapper for EC2 client factory."""


class ELBClientFactory(_ClientFactory):
    """Wrapper for Elastic Load Balancing v2 client factory."""


class SSMClientFactory(_ClientFactory):
    """Wrapper for SSM client factory."""


class ResourceGroupsClientFactory(_ClientFactory):
    """Wrapper for Resource Groups client factory."""


# =============================================================================
# AWS Module
# =============================================================================


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([AWSModule(AwsOptions(region="us-west-2"))])
        >>> ec2 = injector.get(EC2ClientFactory)
    """

    def __init__(self, options: AwsOptions) -> None:
        self._options = options

    @singleton
    @provider
    def provide_options(self) -> AwsOptions:
        return self._options

    @singleton
    @provider
    def provide_session(self, options: AwsOptions) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        if options.access_key_id and options.secret_access_key:
            return aioboto3.Session(
                aws_access_key_id=options.access_key_id,
                aws_secret_access_key=options.secret_access_key,
                region_name=options.region,
            )
        return aioboto3.Session(region_name=options.region)

    def _factory(self, session: aioboto3.Session, service: str) -> Callable[[], AbstractAsyncContextManager[Any]]:
        region = self._options.region

        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client(service, region_name=region) as client:
                yield client

        return factory

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session) -> EC2ClientFactory:
        return EC2ClientFactory(self._factory(session, "ec2"))

    @singleton
    @provider
    def provide_elb(self, session: aioboto3.Session) -> ELBClientFactory:
        return ELBClientFactory(self._factory(session, "elbv2"))

    @singleton
    @provider
    def provide_ssm(self, session: aioboto3.Session) -> SSMClientFactory:
        return SSMClientFactory(self._factory(session, "ssm"))

    @singleton
    @provider
    def provide_resource_groups(self, session: aioboto3.Session) -> ResourceGroupsClientFactory:
        return ResourceGroupsClientFactory(self._factory(session, "resource-groups"))


__all__ = [
    "AWSModule",
    "Client",
    "EC2ClientFactory",
    "ELBClientFactory",
    "ResourceGroupsClientFactory",
    "SSMClientFactory",
]
