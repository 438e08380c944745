"""
Service Route Table

The fixed set of platform services exposed through the HTTP gateway. Each
service is reached under ``/<name>/`` and proxied to ``<address>:<port>``.
"""

from typing import Iterable, List

from pydantic import BaseModel


class ServiceRoute(BaseModel):
    name: str
    port: int
    env_key: str


DEFAULT_SERVICE_ROUTES = (
    ServiceRoute(name="admin", port=8085, env_key="ADMIN_API_URL"),
    ServiceRoute(name="courses", port=8086, env_key="COURSES_API_URL"),
    ServiceRoute(name="feedbacks", port=8088, env_key="FEEDBACKS_API_URL"),
    ServiceRoute(name="learning", port=8087, env_key="LEARNING_API_URL"),
)


class RouteTableError(ValueError):
    """Raised when a service route table is inconsistent"""
    pass


def path_prefix(name: str) -> str:
    return f"/{name}/"


def route_key(name: str) -> str:
    """Gateway route key for a service, e.g. ``ANY /admin/{proxy+}``"""
    return f"ANY /{name}/{{proxy+}}"


def validate_route_table(routes: Iterable[ServiceRoute]) -> List[ServiceRoute]:
    """
    Check that every service has a usable, unique name, prefix and port.

    Args:
        routes: Service routes to check

    Returns:
        The routes as a list, in declaration order

    Raises:
        RouteTableError: On empty tables, bad names, duplicate prefixes or
            env keys, or out-of-range ports
    """
    routes = list(routes)
    if not routes:
        raise RouteTableError("Route table is empty")

    seen_prefixes = set()
    seen_env_keys = set()
    for route in routes:
        if not route.name or "/" in route.name or route.name.strip() != route.name:
            raise RouteTableError(f"Invalid service name: {route.name!r}")
        if not 1 <= route.port <= 65535:
            raise RouteTableError(f"Invalid port {route.port} for service {route.name}")

        prefix = path_prefix(route.name)
        if prefix in seen_prefixes:
            raise RouteTableError(f"Duplicate path prefix: {prefix}")
        if route.env_key in seen_env_keys:
            raise RouteTableError(f"Duplicate env key: {route.env_key}")

        seen_prefixes.add(prefix)
        seen_env_keys.add(route.env_key)

    return routes
