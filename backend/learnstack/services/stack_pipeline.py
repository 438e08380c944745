"""
Stack Pipeline

Runs the provisioning steps in dependency order:

    keypair -> instance -> address binding -> gateway -> access rule      (provision)
    host key capture -> readiness -> configuration handoff           (handoff)

and tears them down in reverse. Every step reports the identifiers created
so far through the ``progress`` callback, so a caller can persist partial
state and clean up after a failure.
"""

import time
import logging
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from learnstack.services.bootstrap import render_boot_script
from learnstack.services.compute import (
    HostKeyUnavailableError,
    authorize_database_access,
    bind_static_address,
    capture_host_key_fingerprints,
    launch_instance,
    release_static_address,
    revoke_database_access,
    terminate_instance,
)
from learnstack.services.gateway import create_gateway, delete_gateway
from learnstack.services.handoff import (
    HandoffError,
    check_stack_health,
    handoff_values,
    launch_stack,
    push_configuration,
)
from learnstack.services.keypair import create_keypair, delete_keypair
from learnstack.services.readiness import ReadinessPolicy, marker_check, wait_for_marker
from learnstack.services.remote import RemoteSession

logger = logging.getLogger(__name__)


class StackOutputs(BaseModel):
    key_name: Optional[str] = None
    key_path: Optional[str] = None
    key_pair_id: Optional[str] = None
    instance_id: Optional[str] = None
    private_ip: Optional[str] = None
    public_ip: Optional[str] = None
    association_id: Optional[str] = None
    api_id: Optional[str] = None
    api_endpoint: Optional[str] = None
    invoke_url: Optional[str] = None
    access_rule_id: Optional[str] = None
    host_key_fingerprints: List[str] = Field(default_factory=list)
    running_services: List[str] = Field(default_factory=list)


Progress = Callable[[str, StackOutputs], None]


def _noop(stage: str, outputs: StackOutputs) -> None:
    pass


class StackPipeline:
    def __init__(
        self,
        settings,
        clients,
        session_factory: Callable[..., RemoteSession] = RemoteSession,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.clients = clients
        self.session_factory = session_factory
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(self, progress: Progress = _noop, outputs: StackOutputs = None) -> StackOutputs:
        """
        Create every AWS resource of the stack.

        Returns:
            StackOutputs with all resource identifiers filled in
        """
        settings = self.settings
        ec2 = self.clients.ec2
        outputs = outputs or StackOutputs()

        material, key_pair_id = create_keypair(ec2, outputs.key_name or settings.key_name, settings.key_dir)
        outputs.key_name = material.key_name
        outputs.key_path = material.private_key_path
        outputs.key_pair_id = key_pair_id
        progress("keypair", outputs)

        user_data = render_boot_script(
            repository_url=settings.repository_url,
            app_dir=settings.app_dir,
            marker_path=settings.marker_path,
            remote_user=settings.remote_user,
        )
        instance = launch_instance(ec2, settings, material.key_name, user_data)
        outputs.instance_id = instance.instance_id
        outputs.private_ip = instance.private_ip
        progress("instance", outputs)

        binding = bind_static_address(ec2, instance.instance_id, settings.eip_allocation_id)
        outputs.association_id = binding.association_id
        outputs.public_ip = binding.public_ip
        progress("address", outputs)

        gateway = create_gateway(
            self.clients.apigateway,
            settings.gateway_name,
            settings.routes,
            binding.public_ip,
            settings.stage_name,
        )
        outputs.api_id = gateway.api_id
        outputs.api_endpoint = gateway.api_endpoint
        outputs.invoke_url = gateway.invoke_url
        progress("gateway", outputs)

        outputs.access_rule_id = authorize_database_access(
            ec2,
            settings.database_security_group_id,
            instance.private_ip,
            settings.database_port,
        )
        progress("access_rule", outputs)

        logger.info(
            f"Provisioned stack on {outputs.public_ip}",
            extra={"instance_id": outputs.instance_id, "public_ip": outputs.public_ip}
        )
        return outputs

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    def session(self, outputs: StackOutputs) -> RemoteSession:
        return self.session_factory(
            host=outputs.public_ip,
            username=self.settings.remote_user,
            key_path=outputs.key_path,
            fingerprints=outputs.host_key_fingerprints,
            allow_unpinned=self.settings.ssh_allow_unpinned,
            connect_timeout=self.settings.readiness.connect_timeout,
        )

    def handoff(self, outputs: StackOutputs, progress: Progress = _noop) -> StackOutputs:
        """
        Pin the host keys, wait for the boot marker, push the configuration
        and start the stack.

        cloud-init prints the host key fingerprints only after the boot
        script ran, so they are captured here rather than during provisioning.

        Raises:
            ReadinessTimeoutError: If the host never became ready; nothing
                is written to the host in that case
            HandoffError: If the outputs lack an address, key or gateway URL,
                or the remote update fails
        """
        settings = self.settings
        if not (outputs.public_ip and outputs.key_path and outputs.invoke_url):
            raise HandoffError("Stack has no public address, key or gateway URL to hand off")

        if not outputs.host_key_fingerprints:
            self.capture_host_keys(outputs)
            progress("host_keys", outputs)

        wait_for_marker(
            marker_check(lambda: self.session(outputs), settings.marker_path),
            ReadinessPolicy.from_settings(settings.readiness),
            sleep=self.sleep,
        )
        progress("ready", outputs)

        pairs = handoff_values(outputs.public_ip, outputs.invoke_url, settings.routes)
        with self.session(outputs) as session:
            push_configuration(session, settings.remote_env_file, pairs)
            launch_stack(session, settings.app_dir, settings.remote_env_file)
        progress("launched", outputs)

        outputs.running_services = self.health(outputs)
        progress("health", outputs)
        return outputs

    def capture_host_keys(self, outputs: StackOutputs) -> List[str]:
        settings = self.settings
        if not outputs.instance_id:
            raise HandoffError("Stack has no instance to read host keys from")
        try:
            outputs.host_key_fingerprints = capture_host_key_fingerprints(
                self.clients.ec2,
                outputs.instance_id,
                attempts=settings.host_key_attempts,
                delay=settings.host_key_delay,
                sleep=self.sleep,
            )
        except HostKeyUnavailableError:
            if not settings.ssh_allow_unpinned:
                raise
            logger.warning(
                f"Continuing without pinned host keys for {outputs.instance_id}",
                extra={"instance_id": outputs.instance_id}
            )
        return outputs.host_key_fingerprints

    def health(self, outputs: StackOutputs) -> List[str]:
        with self.session(outputs) as session:
            return check_stack_health(session, self.settings.app_dir)

    def apply(self, progress: Progress = _noop) -> StackOutputs:
        outputs = StackOutputs()
        self.provision(progress, outputs)
        return self.handoff(outputs, progress)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self, outputs: StackOutputs, progress: Progress = _noop) -> StackOutputs:
        """
        Delete the resources recorded in ``outputs`` in reverse creation order.

        Each identifier is cleared once its resource is gone, so a failed
        teardown can be resumed with the same outputs.
        """
        ec2 = self.clients.ec2

        if outputs.api_id:
            delete_gateway(self.clients.apigateway, outputs.api_id)
            outputs.api_id = None
            outputs.api_endpoint = None
            outputs.invoke_url = None
            progress("gateway_deleted", outputs)

        if outputs.access_rule_id:
            revoke_database_access(ec2, self.settings.database_security_group_id, outputs.access_rule_id)
            outputs.access_rule_id = None
            progress("access_rule_revoked", outputs)

        if outputs.association_id:
            release_static_address(ec2, outputs.association_id)
            outputs.association_id = None
            outputs.public_ip = None
            progress("address_released", outputs)

        if outputs.instance_id:
            terminate_instance(ec2, outputs.instance_id)
            outputs.instance_id = None
            outputs.private_ip = None
            outputs.running_services = []
            outputs.host_key_fingerprints = []
            progress("instance_terminated", outputs)

        if outputs.key_name:
            delete_keypair(ec2, outputs.key_name, outputs.key_path)
            outputs.key_name = None
            outputs.key_path = None
            outputs.key_pair_id = None
            progress("keypair_deleted", outputs)

        logger.info("Stack torn down")
        return outputs
