"""Shared fixtures for E2E tests."""

import pytest_asyncio

from .testharness import E2ETestContext


@pytest_asyncio.fixture(scope="module", loop_scope="module")
async def ctx():
    context = E2ETestContext()
    await context.setup()
    yield context
    await context.teardown()


@pytest_asyncio.fixture(autouse=True, loop_scope="module")
async def clean_directories(ctx: E2ETestContext):
    await ctx.configure_for_test()
    yield
