"""Actions on the local host: file copy and shell commands."""
import asyncio
import os
import shutil

from deploy import deploy_logger
from deploy.actions.base import DeployAction, DeployContext
from lib.errors import IOFailure
from lib.util import parse_mode


class CopyAction(DeployAction):
    type = "copy"
    uses_network = False

    def _copy(self, source: str, destination: str, mode: int | None):
        os.makedirs(os.path.dirname(os.path.abspath(destination)), exist_ok=True)
        shutil.copyfile(source, destination)
        if mode is not None:
            os.chmod(destination, mode)

    async def execute(self, context: DeployContext) -> str:
        self.require("source", "destination")
        source = context.resolve_source(self.spec["source"])
        destination = context.substitute(self.spec["destination"])
        mode = parse_mode(self.spec.get("permissions"))

        try:
            await asyncio.to_thread(self._copy, source, destination, mode)
        except OSError as exc:
            raise IOFailure(f"Copy to {destination} failed: {exc}", path=destination) from exc

        if self.verify and not os.path.isfile(destination):
            raise IOFailure(f"{destination} does not exist after copy", path=destination)
        deploy_logger.info("Copied %s to %s", source, destination)
        return f"Copied {os.path.basename(source)} to {destination}"


class CommandAction(DeployAction):
    type = "command"
    timeout_key = "command"
    uses_network = False

    async def execute(self, context: DeployContext) -> str:
        self.require("command")
        command = context.substitute(self.spec["command"])
        cwd = context.substitute(self.spec["cwd"]) if self.spec.get("cwd") else None
        env = {**os.environ, **{key: str(context.substitute(str(value)))
                                for key, value in (self.spec.get("env") or {}).items()}}

        deploy_logger.info("Running command for %s: %s", context.certificate.name, command)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as exc:
            raise IOFailure(f"Could not start command: {exc}", path=cwd) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise

        output = stdout.decode("utf-8", errors="replace").strip()
        if self.spec.get("verbose") and output:
            deploy_logger.info("Command output: %s", output)
        if process.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip() or output
            raise IOFailure(f"Command exited with {process.returncode}: {error}")
        return output or f"Command exited with {process.returncode}"
