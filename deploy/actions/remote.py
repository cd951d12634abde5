"""Uploads to remote hosts over SSH, SMB and FTP."""
import asyncio
import ftplib
import io
import posixpath

import asyncssh

from deploy import deploy_logger
from deploy.actions.base import DeployAction, DeployContext
from lib.errors import FeatureUnavailable, IOFailure, Malformed
from lib.util import parse_mode

try:
    import smbclient
except ImportError:
    # smb-copy reports FeatureUnavailable without the smb extra
    smbclient = None


def remote_destination(destination: str, source_path: str, separator: str = "/") -> str:
    """A destination ending in a separator is a directory that keeps the source file name."""
    if destination.endswith(separator):
        return destination + posixpath.basename(source_path.replace("\\", "/"))
    return destination


class SshCopyAction(DeployAction):
    type = "ssh-copy"
    timeout_key = "ssh"

    def _connect_options(self) -> dict:
        options = {
            "host": self.spec["host"],
            "port": int(self.spec.get("port") or 22),
            "username": self.spec.get("username"),
            "known_hosts": self.spec.get("knownHosts"),
        }
        if self.spec.get("privateKey"):
            try:
                options["client_keys"] = [
                    asyncssh.read_private_key(self.spec["privateKey"], self.spec.get("passphrase"))
                ]
            except (asyncssh.KeyImportError, OSError) as exc:
                raise IOFailure(f"Cannot read SSH private key: {exc}", path=self.spec["privateKey"]) from exc
        elif self.spec.get("password"):
            options["password"] = self.spec["password"]
        return options

    async def execute(self, context: DeployContext) -> str:
        self.require("host", "source", "destination")
        source = context.resolve_source(self.spec["source"])
        destination = remote_destination(context.substitute(self.spec["destination"]), source)
        mode = parse_mode(self.spec.get("permissions"))

        try:
            async with asyncssh.connect(**self._connect_options()) as connection:
                async with connection.start_sftp_client() as sftp:
                    directory = posixpath.dirname(destination)
                    if directory:
                        await sftp.makedirs(directory, exist_ok=True)
                    await sftp.put(source, destination)
                    if mode is not None:
                        await sftp.chmod(destination, mode)
                    if self.verify:
                        await sftp.stat(destination)

                message = f"Uploaded to {self.spec['host']}:{destination}"
                if self.spec.get("command"):
                    command = context.substitute(self.spec["command"])
                    result = await connection.run(command, check=False)
                    if result.exit_status != 0:
                        raise IOFailure(f"Remote command exited with {result.exit_status}: {result.stderr}")
                    message += f", ran '{command}'"
        except (asyncssh.Error, OSError) as exc:
            raise IOFailure(f"SSH copy to {self.spec['host']} failed: {exc}") from exc

        deploy_logger.info(message)
        return message


class SmbCopyAction(DeployAction):
    type = "smb-copy"
    timeout_key = "smb"

    def _upload(self, data: bytes, unc_path: str) -> None:
        smbclient.register_session(
            self.spec["host"],
            username=self.spec.get("username"),
            password=self.spec.get("password"),
            port=int(self.spec.get("port") or 445),
            connection_timeout=self.transport_timeout,
        )
        directory = unc_path.rsplit("\\", 1)[0]
        smbclient.makedirs(directory, exist_ok=True)
        with smbclient.open_file(unc_path, mode="wb") as remote_file:
            remote_file.write(data)
        if self.verify and smbclient.stat(unc_path).st_size != len(data):
            raise IOFailure(f"Size of {unc_path} does not match after upload", path=unc_path)

    async def execute(self, context: DeployContext) -> str:
        if smbclient is None:
            raise FeatureUnavailable("smb-copy needs the smbprotocol package")
        self.require("host", "share", "source", "destination")

        source = context.resolve_source(self.spec["source"])
        destination = remote_destination(
            context.substitute(self.spec["destination"]).replace("/", "\\"), source, "\\"
        ).lstrip("\\")
        unc_path = f"\\\\{self.spec['host']}\\{self.spec['share']}\\{destination}"
        data = context.read_source(self.spec["source"])

        try:
            await asyncio.to_thread(self._upload, data, unc_path)
        except (OSError, ValueError) as exc:
            raise IOFailure(f"SMB copy to {unc_path} failed: {exc}", path=unc_path) from exc
        deploy_logger.info("Uploaded %s to %s", source, unc_path)
        return f"Uploaded to {unc_path}"


class FtpCopyAction(DeployAction):
    type = "ftp-copy"
    timeout_key = "ftp"

    @staticmethod
    def _makedirs(ftp: ftplib.FTP, directory: str) -> None:
        current = ""
        for part in [part for part in directory.split("/") if part]:
            current = f"{current}/{part}" if current or directory.startswith("/") else part
            try:
                ftp.mkd(current)
            except ftplib.error_perm:
                # already exists
                pass

    def _upload(self, data: bytes, destination: str) -> None:
        ftp_class = ftplib.FTP_TLS if self.spec.get("secure") else ftplib.FTP
        with ftp_class(timeout=self.timeout) as ftp:
            ftp.connect(self.spec["host"], int(self.spec.get("port") or 21))
            ftp.login(self.spec.get("username") or "anonymous", self.spec.get("password") or "")
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()

            directory = posixpath.dirname(destination)
            if directory:
                self._makedirs(ftp, directory)
            ftp.storbinary(f"STOR {destination}", io.BytesIO(data))

            mode = parse_mode(self.spec.get("permissions"))
            if mode is not None:
                ftp.sendcmd(f"SITE CHMOD {mode:o} {destination}")
            if self.verify:
                ftp.voidcmd("TYPE I")
                if ftp.size(destination) != len(data):
                    raise IOFailure(f"Size of {destination} does not match after upload", path=destination)

    async def execute(self, context: DeployContext) -> str:
        self.require("host", "source", "destination")
        source = context.resolve_source(self.spec["source"])
        destination = remote_destination(context.substitute(self.spec["destination"]), source)
        if not destination:
            raise Malformed("ftp-copy destination is empty")
        data = context.read_source(self.spec["source"])

        try:
            await asyncio.to_thread(self._upload, data, destination)
        except ftplib.all_errors as exc:
            raise IOFailure(f"FTP copy to {self.spec['host']}:{destination} failed: {exc}") from exc
        deploy_logger.info("Uploaded %s to ftp://%s%s", source, self.spec["host"], destination)
        return f"Uploaded to {self.spec['host']}:{destination}"
