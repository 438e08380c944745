"""
Compute Service Layer

EC2 operations for the stack host: launching the instance, binding the
reserved Elastic IP, opening database access from the instance and reading
the SSH host key fingerprints cloud-init prints to the console.
"""

import re
import time
import logging
from typing import Callable, List, NamedTuple, Optional

from botocore.exceptions import ClientError, NoCredentialsError, WaiterError

from learnstack.services.errors import ProvisioningError

logger = logging.getLogger(__name__)

FINGERPRINT_BLOCK = re.compile(
    r"-----BEGIN SSH HOST KEY FINGERPRINTS-----(.*?)-----END SSH HOST KEY FINGERPRINTS-----",
    re.DOTALL,
)
FINGERPRINT = re.compile(r"SHA256:[A-Za-z0-9+/]+")


class ComputeProvisioningError(ProvisioningError):
    """Custom exception for EC2 provisioning errors"""
    pass


class AddressBindingError(ComputeProvisioningError):
    """The reserved address is not attached to the expected instance"""
    pass


class HostKeyUnavailableError(ComputeProvisioningError):
    """Host key fingerprints never appeared in the console output"""
    pass


class InstanceInfo(NamedTuple):
    instance_id: str
    private_ip: str
    public_ip: Optional[str]


class AddressBinding(NamedTuple):
    allocation_id: str
    association_id: str
    public_ip: str


def _client_error(action: str, e: Exception) -> ComputeProvisioningError:
    error_msg = f"Failed to {action}: {str(e)}"
    logger.error(error_msg)
    return ComputeProvisioningError(error_msg)


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def launch_instance(ec2, settings, key_name: str, user_data: str) -> InstanceInfo:
    """
    Launch the stack host and wait until it is running.

    Args:
        ec2: boto3 EC2 client
        settings: StackSettings with image, type, subnet and security group
        key_name: Registered EC2 key pair name
        user_data: First-boot script

    Returns:
        InstanceInfo with the instance id and its addresses

    Raises:
        ComputeProvisioningError: If the launch is rejected or the instance
            never reaches the running state
    """
    logger.info(
        f"Launching {settings.instance_type} instance from {settings.image_id}",
        extra={
            "image_id": settings.image_id,
            "instance_type": settings.instance_type,
            "subnet_id": settings.subnet_id,
        }
    )
    try:
        response = ec2.run_instances(
            ImageId=settings.image_id,
            InstanceType=settings.instance_type,
            MinCount=1,
            MaxCount=1,
            KeyName=key_name,
            SubnetId=settings.subnet_id,
            SecurityGroupIds=[settings.security_group_id],
            UserData=user_data,
            TagSpecifications=[
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": "Name", "Value": settings.instance_name}],
                }
            ],
        )
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(f"Waiting for instance {instance_id} to run", extra={"instance_id": instance_id})

        ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
        described = ec2.describe_instances(InstanceIds=[instance_id])
    except (ClientError, NoCredentialsError, WaiterError) as e:
        raise _client_error("launch instance", e)

    instance = described["Reservations"][0]["Instances"][0]
    info = InstanceInfo(
        instance_id=instance_id,
        private_ip=instance["PrivateIpAddress"],
        public_ip=instance.get("PublicIpAddress"),
    )
    logger.info(
        f"Instance {instance_id} running at {info.private_ip}",
        extra={"instance_id": instance_id, "private_ip": info.private_ip}
    )
    return info


def bind_static_address(ec2, instance_id: str, allocation_id: str) -> AddressBinding:
    """
    Associate the reserved Elastic IP with the instance.

    The association is read back so the returned address is the reserved
    one and never the instance's ephemeral public address.

    Raises:
        AddressBindingError: If the address is not attached to the instance
            after association
        ComputeProvisioningError: If the API rejects the request
    """
    logger.info(
        f"Associating {allocation_id} with {instance_id}",
        extra={"instance_id": instance_id, "allocation_id": allocation_id}
    )
    try:
        response = ec2.associate_address(InstanceId=instance_id, AllocationId=allocation_id)
        addresses = ec2.describe_addresses(AllocationIds=[allocation_id])["Addresses"]
    except (ClientError, NoCredentialsError) as e:
        raise _client_error("associate address", e)

    if not addresses or addresses[0].get("InstanceId") != instance_id:
        raise AddressBindingError(
            f"Address {allocation_id} is not attached to instance {instance_id}"
        )

    return AddressBinding(
        allocation_id=allocation_id,
        association_id=response["AssociationId"],
        public_ip=addresses[0]["PublicIp"],
    )


def release_static_address(ec2, association_id: str) -> None:
    """Disassociate the Elastic IP; the allocation itself is kept"""
    logger.info(f"Disassociating {association_id}", extra={"association_id": association_id})
    try:
        ec2.disassociate_address(AssociationId=association_id)
    except ClientError as e:
        if _error_code(e) == "InvalidAssociationID.NotFound":
            logger.warning(f"Association {association_id} already gone")
            return
        raise _client_error("disassociate address", e)


def _find_ingress_rule(ec2, group_id: str, cidr: str, port: int) -> Optional[str]:
    response = ec2.describe_security_group_rules(
        Filters=[{"Name": "group-id", "Values": [group_id]}]
    )
    for rule in response.get("SecurityGroupRules", []):
        if (
            not rule.get("IsEgress")
            and rule.get("IpProtocol") == "tcp"
            and rule.get("FromPort") == port
            and rule.get("ToPort") == port
            and rule.get("CidrIpv4") == cidr
        ):
            return rule["SecurityGroupRuleId"]
    return None


def authorize_database_access(ec2, group_id: str, private_ip: str, port: int) -> str:
    """
    Allow TCP traffic on ``port`` from the instance's private address.

    An identical existing rule counts as success.

    Returns:
        The security group rule id
    """
    cidr = f"{private_ip}/32"
    logger.info(
        f"Authorizing {cidr} on {group_id}:{port}",
        extra={"group_id": group_id, "cidr": cidr, "port": port}
    )
    try:
        response = ec2.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [{"CidrIp": cidr, "Description": "learnstack host"}],
                }
            ],
        )
        return response["SecurityGroupRules"][0]["SecurityGroupRuleId"]
    except ClientError as e:
        if _error_code(e) != "InvalidPermission.Duplicate":
            raise _client_error("authorize database access", e)

    logger.info(f"Ingress rule for {cidr} already present on {group_id}")
    try:
        rule_id = _find_ingress_rule(ec2, group_id, cidr, port)
    except ClientError as e:
        raise _client_error("describe security group rules", e)
    if rule_id is None:
        raise ComputeProvisioningError(f"Duplicate rule for {cidr} reported but not found on {group_id}")
    return rule_id


def revoke_database_access(ec2, group_id: str, rule_id: str) -> None:
    logger.info(f"Revoking rule {rule_id} on {group_id}", extra={"group_id": group_id, "rule_id": rule_id})
    try:
        ec2.revoke_security_group_ingress(GroupId=group_id, SecurityGroupRuleIds=[rule_id])
    except ClientError as e:
        if _error_code(e) == "InvalidSecurityGroupRuleId.NotFound":
            logger.warning(f"Rule {rule_id} already gone")
            return
        raise _client_error("revoke database access", e)


def terminate_instance(ec2, instance_id: str) -> None:
    """Terminate the instance and wait until it is gone"""
    logger.info(f"Terminating instance {instance_id}", extra={"instance_id": instance_id})
    try:
        ec2.terminate_instances(InstanceIds=[instance_id])
        ec2.get_waiter("instance_terminated").wait(InstanceIds=[instance_id])
    except (ClientError, WaiterError) as e:
        raise _client_error("terminate instance", e)


def parse_host_key_fingerprints(console_output: str) -> List[str]:
    """Extract ``SHA256:`` fingerprints from the cloud-init fingerprint block"""
    if not console_output:
        return []
    fingerprints = []
    for block in FINGERPRINT_BLOCK.findall(console_output):
        for fingerprint in FINGERPRINT.findall(block):
            if fingerprint not in fingerprints:
                fingerprints.append(fingerprint)
    return fingerprints


def capture_host_key_fingerprints(
    ec2,
    instance_id: str,
    attempts: int = 90,
    delay: float = 20.0,
    sleep: Callable[[float], None] = time.sleep,
) -> List[str]:
    """
    Read the host key fingerprints from the instance console output.

    cloud-init prints the fingerprints after the boot script finished, and
    EC2 publishes the console output with a delay, so it is read up to
    ``attempts`` times, ``delay`` seconds apart. ``Latest`` is not requested
    because only Nitro instances support it.

    Raises:
        HostKeyUnavailableError: If no fingerprints appeared in time
    """
    for attempt in range(1, attempts + 1):
        try:
            response = ec2.get_console_output(InstanceId=instance_id)
        except ClientError as e:
            raise _client_error("read console output", e)

        fingerprints = parse_host_key_fingerprints(response.get("Output", ""))
        if fingerprints:
            logger.info(
                f"Captured {len(fingerprints)} host key fingerprints for {instance_id}",
                extra={"instance_id": instance_id, "fingerprints": fingerprints}
            )
            return fingerprints

        logger.debug(f"No fingerprints yet for {instance_id} (attempt {attempt}/{attempts})")
        if attempt < attempts:
            sleep(delay)

    raise HostKeyUnavailableError(
        f"Host key fingerprints for {instance_id} not available after {attempts} attempts"
    )
