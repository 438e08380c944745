import logging
from typing import NamedTuple

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from learnstack.services.errors import ProvisioningError

logger = logging.getLogger(__name__)

SESSION_NAME = "learnstack-session"


class AwsClients(NamedTuple):
    ec2: object
    apigateway: object


def assume_role(role_arn: str, external_id: str = None):
    """Assume role in the target AWS account"""
    sts = boto3.client('sts')

    params = {
        'RoleArn': role_arn,
        'RoleSessionName': SESSION_NAME,
        'DurationSeconds': 3600,
    }
    if external_id:
        params['ExternalId'] = external_id

    try:
        response = sts.assume_role(**params)
        return response['Credentials']
    except (ClientError, NoCredentialsError) as e:
        raise ProvisioningError(f"Failed to assume role: {str(e)}")


def get_session(settings) -> boto3.Session:
    """boto3 session for the configured account, via role assumption when a role ARN is set"""
    if not settings.role_arn:
        logger.debug(f"Using default credential chain in {settings.region}")
        return boto3.Session(region_name=settings.region)

    logger.info(f"Assuming role {settings.role_arn}", extra={"role_arn": settings.role_arn})
    creds = assume_role(settings.role_arn, settings.external_id)
    return boto3.Session(
        aws_access_key_id=creds['AccessKeyId'],
        aws_secret_access_key=creds['SecretAccessKey'],
        aws_session_token=creds['SessionToken'],
        region_name=settings.region,
    )


def get_clients(settings) -> AwsClients:
    session = get_session(settings)
    return AwsClients(
        ec2=session.client('ec2'),
        apigateway=session.client('apigatewayv2'),
    )
