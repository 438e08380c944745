#!/usr/bin/env python3
"""
Unit tests for the stack pipeline.

The AWS and SSH helpers are patched in the pipeline module so the tests
check ordering and data flow between steps:
- Resources are created in dependency order
- Host keys are pinned at the start of the handoff
- The gateway targets the bound static address, not the ephemeral one
- Teardown runs in reverse and clears identifiers
"""

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from learnstack.config import StackSettings
from learnstack.services.compute import AddressBinding, HostKeyUnavailableError, InstanceInfo
from learnstack.services.gateway import GatewayInfo
from learnstack.services.handoff import HandoffError
from learnstack.services.keypair import KeyMaterial
from learnstack.services.stack_pipeline import StackOutputs, StackPipeline

MODULE = 'learnstack.services.stack_pipeline'
INVOKE_URL = "https://abc123.execute-api.us-east-1.amazonaws.com/"


def make_settings(**overrides):
    values = dict(
        subnet_id="subnet-1",
        security_group_id="sg-1",
        eip_allocation_id="eipalloc-1",
        database_security_group_id="sg-db",
        repository_url="https://github.com/example/learnstack.git",
    )
    values.update(overrides)
    return StackSettings(**values)


class TestProvision(unittest.TestCase):
    """Test StackPipeline.provision"""

    def setUp(self):
        self.calls = []
        self.patches = {
            'create_keypair': (KeyMaterial("learnstack-key", "./learnstack-key.pem", "ssh-rsa AAAA"), "key-0abc"),
            'render_boot_script': "#!/bin/bash\n",
            'launch_instance': InstanceInfo("i-0123", "10.0.1.25", "3.3.3.3"),
            'bind_static_address': AddressBinding("eipalloc-1", "eipassoc-1", "54.10.20.30"),
            'create_gateway': GatewayInfo("abc123", INVOKE_URL.rstrip("/"), INVOKE_URL, {}, {}),
            'authorize_database_access': "sgr-1",
        }
        self.mocks = {}
        for name, value in self.patches.items():
            patcher = patch(f'{MODULE}.{name}')
            mock = patcher.start()
            self.addCleanup(patcher.stop)
            mock.return_value = value
            mock.side_effect = self._recorder(name, value)
            self.mocks[name] = mock

    def _recorder(self, name, value):
        def record(*args, **kwargs):
            self.calls.append(name)
            return value
        return record

    def test_steps_run_in_dependency_order(self):
        pipeline = StackPipeline(make_settings(), MagicMock(), sleep=MagicMock())
        stages = []

        pipeline.provision(progress=lambda stage, outputs: stages.append(stage))

        self.assertEqual(self.calls, [
            'create_keypair',
            'render_boot_script',
            'launch_instance',
            'bind_static_address',
            'create_gateway',
            'authorize_database_access',
        ])
        self.assertEqual(stages, ["keypair", "instance", "address", "gateway", "access_rule"])

    def test_uses_key_name_of_deployment(self):
        pipeline = StackPipeline(make_settings(), MagicMock(), sleep=MagicMock())

        pipeline.provision(outputs=StackOutputs(key_name="learnstack-key-1a2b3c4d"))

        args = self.mocks['create_keypair'].call_args[0]
        self.assertEqual(args[1], "learnstack-key-1a2b3c4d")
        self.assertEqual(args[2], ".")

    def test_gateway_targets_bound_address(self):
        clients = MagicMock()
        pipeline = StackPipeline(make_settings(), clients, sleep=MagicMock())

        outputs = pipeline.provision()

        gateway_args = self.mocks['create_gateway'].call_args[0]
        self.assertIs(gateway_args[0], clients.apigateway)
        self.assertEqual(gateway_args[3], "54.10.20.30")
        self.assertEqual(outputs.public_ip, "54.10.20.30")

    def test_access_rule_uses_private_address(self):
        pipeline = StackPipeline(make_settings(database_port=5433), MagicMock(), sleep=MagicMock())

        outputs = pipeline.provision()

        args = self.mocks['authorize_database_access'].call_args[0]
        self.assertEqual(args[1:], ("sg-db", "10.0.1.25", 5433))
        self.assertEqual(outputs.access_rule_id, "sgr-1")
        self.assertEqual(outputs.key_pair_id, "key-0abc")
        self.assertEqual(outputs.host_key_fingerprints, [])

    def test_progress_reports_partial_outputs_before_failure(self):
        self.mocks['create_gateway'].side_effect = RuntimeError("gateway down")
        pipeline = StackPipeline(make_settings(), MagicMock(), sleep=MagicMock())
        seen = []

        with self.assertRaises(RuntimeError):
            pipeline.provision(progress=lambda stage, outputs: seen.append(outputs.model_copy()))

        self.assertEqual(seen[-1].instance_id, "i-0123")
        self.assertEqual(seen[-1].association_id, "eipassoc-1")
        self.assertIsNone(seen[-1].api_id)


class FakeSession:
    def __init__(self):
        self.entered = 0

    def __enter__(self):
        self.entered += 1
        return self

    def __exit__(self, *args):
        return None


class TestHandoff(unittest.TestCase):
    """Test StackPipeline.handoff"""

    def outputs(self):
        return StackOutputs(
            public_ip="54.10.20.30",
            key_path="./learnstack-key.pem",
            invoke_url=INVOKE_URL,
            host_key_fingerprints=["SHA256:abc"],
        )

    @patch(f'{MODULE}.check_stack_health', return_value=["admin", "courses"])
    @patch(f'{MODULE}.launch_stack')
    @patch(f'{MODULE}.push_configuration', return_value=[])
    @patch(f'{MODULE}.wait_for_marker', return_value=1)
    def test_handoff_pushes_then_launches(self, mock_wait, mock_push, mock_launch, mock_health):
        session = FakeSession()
        session_factory = MagicMock(return_value=session)
        pipeline = StackPipeline(make_settings(), MagicMock(), session_factory=session_factory)
        stages = []

        outputs = pipeline.handoff(self.outputs(), progress=lambda stage, _: stages.append(stage))

        pairs = mock_push.call_args[0][2]
        self.assertEqual(pairs[0], ("PUBLIC_IP", "54.10.20.30"))
        self.assertEqual(mock_push.call_args[0][1], "/home/ubuntu/learnstack/.env")
        mock_launch.assert_called_once_with(session, "/home/ubuntu/learnstack", "/home/ubuntu/learnstack/.env")
        self.assertEqual(outputs.running_services, ["admin", "courses"])
        self.assertEqual(stages, ["ready", "launched", "health"])

        kwargs = session_factory.call_args.kwargs
        self.assertEqual(kwargs["host"], "54.10.20.30")
        self.assertEqual(kwargs["fingerprints"], ["SHA256:abc"])
        self.assertFalse(kwargs["allow_unpinned"])

    @patch(f'{MODULE}.check_stack_health', return_value=[])
    @patch(f'{MODULE}.launch_stack')
    @patch(f'{MODULE}.push_configuration', return_value=[])
    @patch(f'{MODULE}.wait_for_marker', return_value=1)
    @patch(f'{MODULE}.capture_host_key_fingerprints', return_value=["SHA256:new"])
    def test_host_keys_captured_before_readiness(self, mock_capture, mock_wait, *_):
        calls = []
        mock_capture.side_effect = lambda *a, **k: calls.append("capture") or ["SHA256:new"]
        mock_wait.side_effect = lambda *a, **k: calls.append("wait") or 1
        clients = MagicMock()
        session_factory = MagicMock(return_value=FakeSession())
        pipeline = StackPipeline(make_settings(), clients, session_factory=session_factory, sleep=MagicMock())
        outputs = self.outputs()
        outputs.instance_id = "i-0123"
        outputs.host_key_fingerprints = []
        stages = []

        pipeline.handoff(outputs, progress=lambda stage, _: stages.append(stage))

        self.assertEqual(calls, ["capture", "wait"])
        self.assertEqual(mock_capture.call_args[0], (clients.ec2, "i-0123"))
        self.assertEqual(mock_capture.call_args.kwargs["attempts"], 90)
        self.assertEqual(stages, ["host_keys", "ready", "launched", "health"])
        self.assertEqual(session_factory.call_args.kwargs["fingerprints"], ["SHA256:new"])

    @patch(f'{MODULE}.check_stack_health', return_value=[])
    @patch(f'{MODULE}.launch_stack')
    @patch(f'{MODULE}.push_configuration', return_value=[])
    @patch(f'{MODULE}.wait_for_marker', return_value=1)
    @patch(f'{MODULE}.capture_host_key_fingerprints')
    def test_pinned_keys_are_not_captured_again(self, mock_capture, *_):
        pipeline = StackPipeline(make_settings(), MagicMock(), session_factory=MagicMock(return_value=FakeSession()))

        pipeline.handoff(self.outputs())

        mock_capture.assert_not_called()

    @patch(f'{MODULE}.wait_for_marker')
    @patch(f'{MODULE}.capture_host_key_fingerprints', side_effect=HostKeyUnavailableError("none"))
    def test_missing_host_keys_fail_unless_unpinned_allowed(self, mock_capture, mock_wait):
        outputs = self.outputs()
        outputs.instance_id = "i-0123"
        outputs.host_key_fingerprints = []

        with self.assertRaises(HostKeyUnavailableError):
            StackPipeline(make_settings(), MagicMock(), session_factory=MagicMock()).handoff(outputs)
        mock_wait.assert_not_called()

        pipeline = StackPipeline(make_settings(ssh_allow_unpinned=True), MagicMock(), session_factory=MagicMock())
        self.assertEqual(pipeline.capture_host_keys(outputs), [])

    def test_host_keys_need_an_instance(self):
        outputs = self.outputs()
        outputs.host_key_fingerprints = []
        pipeline = StackPipeline(make_settings(), MagicMock(), session_factory=MagicMock())

        with self.assertRaises(HandoffError):
            pipeline.handoff(outputs)

        pipeline.session_factory.assert_not_called()

    def test_handoff_requires_address_key_and_url(self):
        pipeline = StackPipeline(make_settings(), MagicMock(), session_factory=MagicMock())

        with self.assertRaises(HandoffError):
            pipeline.handoff(StackOutputs(public_ip="54.10.20.30"))

        pipeline.session_factory.assert_not_called()


class TestTeardown(unittest.TestCase):
    """Test StackPipeline.teardown"""

    def test_reverse_order_and_cleared_outputs(self):
        calls = []
        names = ['delete_gateway', 'revoke_database_access', 'release_static_address',
                 'terminate_instance', 'delete_keypair']
        for name in names:
            patcher = patch(f'{MODULE}.{name}', side_effect=lambda *a, _name=name, **k: calls.append(_name))
            patcher.start()
            self.addCleanup(patcher.stop)

        outputs = StackOutputs(
            key_name="learnstack-key",
            key_path="./learnstack-key.pem",
            instance_id="i-0123",
            private_ip="10.0.1.25",
            public_ip="54.10.20.30",
            association_id="eipassoc-1",
            api_id="abc123",
            invoke_url=INVOKE_URL,
            access_rule_id="sgr-1",
        )

        result = StackPipeline(make_settings(), MagicMock()).teardown(outputs)

        self.assertEqual(calls, names)
        self.assertIsNone(result.api_id)
        self.assertIsNone(result.instance_id)
        self.assertIsNone(result.public_ip)
        self.assertIsNone(result.key_name)

    @patch(f'{MODULE}.delete_keypair')
    @patch(f'{MODULE}.terminate_instance')
    @patch(f'{MODULE}.delete_gateway')
    def test_skips_resources_never_created(self, mock_delete_gateway, mock_terminate, mock_delete_keypair):
        outputs = StackOutputs(key_name="learnstack-key", key_path="./learnstack-key.pem")

        StackPipeline(make_settings(), MagicMock()).teardown(outputs)

        mock_delete_gateway.assert_not_called()
        mock_terminate.assert_not_called()
        mock_delete_keypair.assert_called_once()


if __name__ == "__main__":
    unittest.main()
