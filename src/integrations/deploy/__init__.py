"""Deployment trigger integrations."""

from src.integrations.deploy.hook_client import (
    DeployHookClient,
    DeployHookError,
    DeployHookNotConfiguredError,
    get_deploy_hook_client,
)

__all__ = ["DeployHookClient", "DeployHookError", "DeployHookNotConfiguredError", "get_deploy_hook_client"]
