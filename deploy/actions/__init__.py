# pylint: disable=missing-module-docstring

from .base import DeployAction, DeployContext
from .containers import DockerRestartAction, NginxProxyManagerAction
from .local import CommandAction, CopyAction
from .mail import EmailAction
from .remote import FtpCopyAction, SmbCopyAction, SshCopyAction
from .web import ApiCallAction, WebhookAction

ACTION_TYPES: dict[str, type[DeployAction]] = {
    action.type: action for action in (
        CopyAction,
        CommandAction,
        DockerRestartAction,
        NginxProxyManagerAction,
        SshCopyAction,
        SmbCopyAction,
        FtpCopyAction,
        ApiCallAction,
        WebhookAction,
        EmailAction,
    )
}

__all__ = [
    'ACTION_TYPES',
    'DeployAction',
    'DeployContext',
]
