"""
Provision the learnstack host without the API server.
Run: python scripts/provision_stack.py apply|handoff|destroy|outputs [--state stack-state.json]

Resource identifiers are written to the state file after every step, so a
failed apply can be resumed with `handoff` or cleaned up with `destroy`.
"""
import argparse
import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from learnstack.config import load_settings, SettingsError
from learnstack.services.aws_conn import get_clients
from learnstack.services.errors import ProvisioningError
from learnstack.services.stack_pipeline import StackOutputs, StackPipeline

DEFAULT_STATE_FILE = "stack-state.json"


def load_state(path: str) -> StackOutputs:
    if not os.path.exists(path):
        return StackOutputs()
    with open(path, 'r') as f:
        return StackOutputs(**json.load(f))


def save_state(path: str, outputs: StackOutputs) -> None:
    with open(path, 'w') as f:
        json.dump(outputs.model_dump(), f, indent=2)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Provision the learnstack host")
    parser.add_argument("command", choices=["apply", "handoff", "destroy", "outputs"])
    parser.add_argument("--state", default=DEFAULT_STATE_FILE, help="JSON file holding resource ids")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    outputs = load_state(args.state)
    if args.command == "outputs":
        print(f"public_ip  = {outputs.public_ip}")
        print(f"invoke_url = {outputs.invoke_url}")
        return 0

    try:
        settings = load_settings()
    except SettingsError as e:
        print(f"❌ {e}")
        return 2

    def progress(stage: str, current: StackOutputs) -> None:
        save_state(args.state, current)
        print(f"   ✅ {stage}")

    pipeline = StackPipeline(settings, get_clients(settings))

    try:
        if args.command == "apply":
            print("🚀 Provisioning stack...")
            pipeline.provision(progress, outputs)
            print("🤝 Handing off configuration...")
            pipeline.handoff(outputs, progress)
        elif args.command == "handoff":
            print("🤝 Handing off configuration...")
            pipeline.handoff(outputs, progress)
        else:
            print("🧹 Destroying stack...")
            pipeline.teardown(outputs, progress)
    except ProvisioningError as e:
        save_state(args.state, outputs)
        print(f"\n❌ {args.command} failed: {e}")
        return 1

    print("\n" + "=" * 50)
    if args.command == "destroy":
        print("✅ Stack destroyed")
    else:
        print(f"✅ public_ip  = {outputs.public_ip}")
        print(f"✅ invoke_url = {outputs.invoke_url}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
