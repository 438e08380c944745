"""
Gateway Service Layer

Creates the HTTP API that fans requests out to the platform services by path
prefix. Every integration targets the stack's static address, never the
instance's own address.
"""

import logging
from typing import Dict, Iterable, List, NamedTuple

from botocore.exceptions import ClientError, NoCredentialsError

from learnstack.services.errors import ProvisioningError
from learnstack.services.routes import ServiceRoute, route_key, validate_route_table

logger = logging.getLogger(__name__)

DEFAULT_STAGE = "$default"


class GatewayProvisioningError(ProvisioningError):
    """Custom exception for API Gateway errors"""
    pass


class GatewayRouteSpec(NamedTuple):
    name: str
    port: int
    route_key: str
    integration_uri: str


class GatewayInfo(NamedTuple):
    api_id: str
    api_endpoint: str
    invoke_url: str
    integration_ids: Dict[str, str]
    route_ids: Dict[str, str]


def build_gateway_plan(routes: Iterable[ServiceRoute], address: str) -> List[GatewayRouteSpec]:
    """
    Compute one integration and route per service.

    Args:
        routes: Service route table
        address: Static public address the services listen on

    Returns:
        Route specs in route table order

    Example:
        build_gateway_plan([ServiceRoute(name="admin", port=8085, env_key="ADMIN_API_URL")], "1.2.3.4")
        # [GatewayRouteSpec("admin", 8085, "ANY /admin/{proxy+}", "http://1.2.3.4:8085/{proxy}")]
    """
    if not address:
        raise GatewayProvisioningError("A static address is required to build the gateway")

    return [
        GatewayRouteSpec(
            name=route.name,
            port=route.port,
            route_key=route_key(route.name),
            integration_uri=f"http://{address}:{route.port}/{{proxy}}",
        )
        for route in validate_route_table(routes)
    ]


def invoke_url(api_endpoint: str, stage_name: str = DEFAULT_STAGE) -> str:
    endpoint = api_endpoint.rstrip("/")
    if stage_name == DEFAULT_STAGE:
        return f"{endpoint}/"
    return f"{endpoint}/{stage_name}"


def create_gateway(
    client,
    name: str,
    routes: Iterable[ServiceRoute],
    address: str,
    stage_name: str = DEFAULT_STAGE,
) -> GatewayInfo:
    """
    Create the HTTP API, its integrations and routes, and an auto-deploying stage.

    Args:
        client: boto3 apigatewayv2 client
        name: API name
        routes: Service route table
        address: Static public address of the stack host
        stage_name: Stage to publish, ``$default`` by default

    Returns:
        GatewayInfo with the API id, endpoint and invoke URL

    Raises:
        GatewayProvisioningError: If any API call is rejected
    """
    plan = build_gateway_plan(routes, address)
    integration_ids = {}
    route_ids = {}

    try:
        api = client.create_api(Name=name, ProtocolType="HTTP")
        api_id = api["ApiId"]
        logger.info(f"Created HTTP API {api_id}", extra={"api_id": api_id, "api_name": name})

        for spec in plan:
            integration = client.create_integration(
                ApiId=api_id,
                IntegrationType="HTTP_PROXY",
                IntegrationMethod="ANY",
                IntegrationUri=spec.integration_uri,
                PayloadFormatVersion="1.0",
            )
            integration_ids[spec.name] = integration["IntegrationId"]

            route = client.create_route(
                ApiId=api_id,
                RouteKey=spec.route_key,
                Target=f"integrations/{integration['IntegrationId']}",
            )
            route_ids[spec.name] = route["RouteId"]
            logger.info(
                f"Routed {spec.route_key} to {spec.integration_uri}",
                extra={"api_id": api_id, "service": spec.name, "port": spec.port}
            )

        client.create_stage(ApiId=api_id, StageName=stage_name, AutoDeploy=True)
    except (ClientError, NoCredentialsError) as e:
        error_msg = f"Failed to create gateway {name}: {str(e)}"
        logger.error(error_msg)
        raise GatewayProvisioningError(error_msg)

    return GatewayInfo(
        api_id=api_id,
        api_endpoint=api["ApiEndpoint"],
        invoke_url=invoke_url(api["ApiEndpoint"], stage_name),
        integration_ids=integration_ids,
        route_ids=route_ids,
    )


def delete_gateway(client, api_id: str) -> None:
    """Delete the HTTP API together with its routes, integrations and stages"""
    logger.info(f"Deleting HTTP API {api_id}", extra={"api_id": api_id})
    try:
        client.delete_api(ApiId=api_id)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "NotFoundException":
            logger.warning(f"HTTP API {api_id} already gone")
            return
        error_msg = f"Failed to delete gateway {api_id}: {str(e)}"
        logger.error(error_msg)
        raise GatewayProvisioningError(error_msg)
