# Licensed under GPL 3: https://www.gnu.org/licenses/gpl-3.0.html
"""Sequential execution of a certificate's deploy actions."""
import asyncio

from certmgr.config import DeployConfig
from deploy import deploy_logger
from deploy.actions import ACTION_TYPES, DeployAction, DeployContext
from lib.errors import Cancelled, CertManagerException, InternalError, Malformed
from lib.util import mask_secrets


class DeployOrchestrator:
    """
    Runs deploy actions in list order.

    A failing action is recorded and the next one still runs. Network bound
    actions share a process-wide semaphore so concurrent deployments of
    different certificates stay within ``max_parallel``.
    """

    def __init__(self, config: DeployConfig = None):
        self.config = config or DeployConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_parallel)

    def build_action(self, spec: dict) -> DeployAction:
        if not isinstance(spec, dict):
            raise Malformed(f"Deploy action must be an object, got {type(spec).__name__}")
        action_class = ACTION_TYPES.get(spec.get("type"))
        if action_class is None:
            raise Malformed(f"Unknown deploy action type: {spec.get('type')}")
        return action_class(spec, self.config)

    async def _run(self, action: DeployAction, context: DeployContext) -> str:
        async def call():
            if action.uses_network:
                async with self._semaphore:
                    return await action.execute(context)
            return await action.execute(context)

        if action.timeout is None:
            return await call()
        try:
            return await asyncio.wait_for(call(), action.timeout)
        except asyncio.TimeoutError as exc:
            raise Cancelled(f"{action.type} action '{action.name}' timed out after {action.timeout}s") from exc

    async def deploy(self, certificate, catalog=None) -> dict:
        """Run every enabled action of certificate. Returns the aggregated result."""
        actions = certificate.config.deploy_actions
        result = {"success": True, "actionsExecuted": 0, "failures": [], "details": []}
        if not actions:
            return result

        deploy_logger.info("Deploying %s with %s actions", certificate.name, len(actions))
        context = DeployContext(certificate, catalog)
        try:
            for index, spec in enumerate(actions):
                action_type = spec.get("type") if isinstance(spec, dict) else None
                if isinstance(spec, dict) and spec.get("enabled") is False:
                    deploy_logger.debug("Skipping disabled action %s (%s)", index, action_type)
                    continue

                result["actionsExecuted"] += 1
                deploy_logger.info("Running deploy action %s: %s", index, mask_secrets(spec))
                try:
                    action = self.build_action(spec)
                    message = await self._run(action, context)
                except CertManagerException as exc:
                    error = exc
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    error = InternalError(f"{action_type} action crashed: {exc}")
                else:
                    result["details"].append({"type": action_type, "success": True, "message": message})
                    continue

                result["failures"].append({
                    "type": action_type,
                    "error": error.message,
                    "errorKind": error.kind,
                    "action": mask_secrets(spec),
                })
                result["details"].append({"type": action_type, "success": False, "message": error.message})
        finally:
            context.cleanup()

        result["success"] = not result["failures"]
        deploy_logger.info(
            "Deployment of %s finished: %s actions, %s failed",
            certificate.name, result["actionsExecuted"], len(result["failures"])
        )
        return result
