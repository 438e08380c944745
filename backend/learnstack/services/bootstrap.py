"""
First-boot script for the stack host.

The script runs once through cloud-init. It installs the runtimes the
platform needs, clones the application repository and, only when every step
succeeded, writes the marker file the readiness poller waits for.
"""

import shlex

BOOT_SCRIPT_TEMPLATE = """#!/bin/bash
set -euo pipefail

export DEBIAN_FRONTEND=noninteractive

# Base packages and runtimes
apt-get update -y
apt-get install -y ca-certificates curl git gnupg python3 python3-pip openjdk-17-jdk

# Docker engine with the compose plugin
install -m 0755 -d /etc/apt/keyrings
curl -fsSL https://download.docker.com/linux/ubuntu/gpg | gpg --dearmor -o /etc/apt/keyrings/docker.gpg
chmod a+r /etc/apt/keyrings/docker.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] https://download.docker.com/linux/ubuntu $(. /etc/os-release && echo "$VERSION_CODENAME") stable" > /etc/apt/sources.list.d/docker.list
apt-get update -y
apt-get install -y docker-ce docker-ce-cli containerd.io docker-buildx-plugin docker-compose-plugin
systemctl enable --now docker
usermod -aG docker {user}

# Application source
rm -rf {app_dir}
git clone {repository_url} {app_dir}
chown -R {user}:{user} {app_dir}

# Completion marker
touch {marker_path}
chown {user}:{user} {marker_path}
"""


def render_boot_script(
    repository_url: str,
    app_dir: str,
    marker_path: str,
    remote_user: str = "ubuntu",
) -> str:
    """Render the cloud-init user data for the stack host"""
    return BOOT_SCRIPT_TEMPLATE.format(
        user=shlex.quote(remote_user),
        app_dir=shlex.quote(app_dir),
        repository_url=shlex.quote(repository_url),
        marker_path=shlex.quote(marker_path),
    )
