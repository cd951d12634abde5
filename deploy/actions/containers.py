"""Container restarts and Nginx Proxy Manager certificate installs."""
import asyncio
import io
import os
import tarfile
import time

import docker
from docker.errors import DockerException

from deploy import deploy_logger
from deploy.actions.base import DeployAction, DeployContext
from lib.errors import IOFailure, Malformed, NotFound
from lib.util import atomic_write

RESTART_SETTLE_SECONDS = 2


def find_container(client, name: str = None, container_id: str = None):
    """Resolve a container by name (leading / ignored) or by id prefix."""
    containers = client.containers.list(all=True)
    if name:
        wanted = name.lstrip("/")
        for container in containers:
            if container.name.lstrip("/") == wanted:
                return container
    if container_id:
        for container in containers:
            if container.id.startswith(container_id):
                return container
    raise NotFound(f"Container {name or container_id} not found")


def restart_container(container, verify: bool) -> str:
    container.restart()
    time.sleep(RESTART_SETTLE_SECONDS)
    container.reload()
    if verify and container.status != "running":
        raise IOFailure(f"Container {container.name} is {container.status} after restart")
    return container.status


class DockerRestartAction(DeployAction):
    type = "docker-restart"
    timeout_key = "docker"

    def _restart(self) -> str:
        try:
            client = docker.from_env(timeout=self.transport_timeout)
            container = find_container(client, self.spec.get("containerName"), self.spec.get("containerId"))
            status = restart_container(container, self.verify)
        except DockerException as exc:
            raise IOFailure(f"Docker restart failed: {exc}") from exc
        deploy_logger.info("Restarted container %s (%s)", container.name, status)
        return f"Restarted container {container.name}"

    async def execute(self, context: DeployContext) -> str:
        if not self.spec.get("containerName") and not self.spec.get("containerId"):
            raise Malformed("docker-restart action needs containerName or containerId")
        return await asyncio.to_thread(self._restart)


class NginxProxyManagerAction(DeployAction):
    """Installs fullchain.pem and privkey.pem as an NPM custom certificate."""

    type = "nginx-proxy-manager"
    timeout_key = "docker"

    def certificate_dir_name(self, context: DeployContext) -> str:
        name = self.spec.get("certificateName") or context.certificate.name
        return f"custom-{name.replace('.', '-')}"

    def _install_local(self, npm_path: str, directory_name: str, files: dict[str, bytes]) -> str:
        target_dir = os.path.join(npm_path, "letsencrypt", "live", directory_name)
        try:
            os.makedirs(target_dir, exist_ok=True)
            for file_name, content in files.items():
                atomic_write(os.path.join(target_dir, file_name), content,
                             mode=0o600 if file_name == "privkey.pem" else 0o644)
            with open(os.path.join(npm_path, "reload.nginx"), "w", encoding="utf-8") as reload_flag:
                reload_flag.write(str(int(time.time())))
        except OSError as exc:
            raise IOFailure(f"Could not write NPM certificate: {exc}", path=target_dir) from exc

        if self.verify:
            for file_name in files:
                if not os.path.isfile(os.path.join(target_dir, file_name)):
                    raise IOFailure(f"{file_name} missing after install", path=target_dir)
        return f"Installed certificate into {target_dir}"

    @staticmethod
    def _archive(directory_name: str, files: dict[str, bytes]) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            directory = tarfile.TarInfo(directory_name)
            directory.type = tarfile.DIRTYPE
            directory.mode = 0o755
            directory.mtime = int(time.time())
            archive.addfile(directory)
            for file_name, content in files.items():
                info = tarfile.TarInfo(f"{directory_name}/{file_name}")
                info.size = len(content)
                info.mode = 0o600 if file_name == "privkey.pem" else 0o644
                info.mtime = int(time.time())
                archive.addfile(info, io.BytesIO(content))
        return buffer.getvalue()

    def _install_container(self, container_name: str, directory_name: str, files: dict[str, bytes]) -> str:
        live_dir = self.spec.get("containerPath") or "/etc/letsencrypt/live"
        try:
            client = docker.from_env(timeout=self.transport_timeout)
            container = find_container(client, name=container_name, container_id=container_name)
            if not container.put_archive(live_dir, self._archive(directory_name, files)):
                raise IOFailure(f"Upload into container {container.name} was rejected")
            restart_container(container, self.verify)
        except DockerException as exc:
            raise IOFailure(f"Could not install certificate into container: {exc}") from exc
        return f"Installed certificate into container {container.name}:{live_dir}/{directory_name}"

    async def execute(self, context: DeployContext) -> str:
        if not self.spec.get("npmPath") and not self.spec.get("dockerContainer"):
            raise Malformed("nginx-proxy-manager action needs npmPath or dockerContainer")

        files = {
            "fullchain.pem": context.read_source("fullchain"),
            "privkey.pem": context.read_source("key"),
        }
        directory_name = self.certificate_dir_name(context)
        if self.spec.get("npmPath"):
            return await asyncio.to_thread(
                self._install_local, context.substitute(self.spec["npmPath"]), directory_name, files
            )
        return await asyncio.to_thread(
            self._install_container, self.spec["dockerContainer"], directory_name, files
        )
