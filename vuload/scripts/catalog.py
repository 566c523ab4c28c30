"""
Product catalog load script.

Exercises three read endpoints of a product-catalog API. Each endpoint has
its own duration trend and success/failed counters; every request also
increments ``total_requests``.

Environment:
    BASE_URL: API root (default https://dummyjson.com)
    CATEGORY: Category used by products_by_category (default smartphones)
"""

from typing import Optional

from ..framework.models import MetricKind, MetricSpec
from ..framework.worker import IterationContext
from . import Script

DEFAULT_BASE_URL = "https://dummyjson.com"
DEFAULT_CATEGORY = "smartphones"

# Checks only cover transport-level facts.
MAX_RESPONSE_TIME_MS = 1500

ENDPOINTS = ("categories_details", "category_names", "products_by_category")


def _endpoint_metrics(endpoint: str) -> tuple[MetricSpec, ...]:
    return (
        MetricSpec(f"{endpoint}_duration", MetricKind.TREND, unit="ms"),
        MetricSpec(f"{endpoint}_success", MetricKind.COUNTER),
        MetricSpec(f"{endpoint}_failed", MetricKind.COUNTER),
    )


METRICS: tuple[MetricSpec, ...] = (
    MetricSpec("total_requests", MetricKind.COUNTER),
    *(spec for endpoint in ENDPOINTS for spec in _endpoint_metrics(endpoint)),
)


def base_url(ctx: IterationContext) -> str:
    return (ctx.env.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/")


def category(ctx: IterationContext) -> str:
    return ctx.env.get("CATEGORY") or DEFAULT_CATEGORY


def response_checks(body: Optional[object]) -> dict:
    """Named predicates applied to every catalog response."""
    return {
        "status is 2xx": lambda r: 200 <= r.status < 300,
        "response time < 1500ms": lambda r: r.duration_ms < MAX_RESPONSE_TIME_MS,
        "response is json": lambda r: body is not None,
    }


def fetch(ctx: IterationContext, endpoint: str, group_name: str, path: str) -> bool:
    """
    Request one endpoint inside a group and record its metrics.

    Returns:
        True if every check passed
    """
    url = f"{base_url(ctx)}{path}"
    with ctx.group(group_name):
        res = ctx.http.get(url, name=endpoint)
        ctx.add(f"{endpoint}_duration", res.duration_ms)

        body = res.json()
        passed = ctx.check(res, response_checks(body))

        ctx.add("total_requests", 1)
        if passed:
            ctx.add(f"{endpoint}_success", 1)
        else:
            ctx.add(f"{endpoint}_failed", 1)
    return passed


def categories_details(ctx: IterationContext) -> None:
    fetch(ctx, "categories_details", "Products - Categories Details", "/products/categories")


def category_names(ctx: IterationContext) -> None:
    fetch(ctx, "category_names", "Products - Category Names", "/products/category-list")


def products_by_category(ctx: IterationContext) -> None:
    fetch(
        ctx,
        "products_by_category",
        "Products - By Category",
        f"/products/category/{category(ctx)}",
    )


SCRIPT = Script(
    name="catalog",
    functions={
        "categories_details": categories_details,
        "category_names": category_names,
        "products_by_category": products_by_category,
    },
    metrics=METRICS,
)
