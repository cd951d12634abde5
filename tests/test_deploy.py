import asyncio
import io
import os
import stat
from pathlib import Path

import pytest
from aiohttp import test_utils, web

from certmgr.config import DeployConfig
from deploy.actions import DeployContext
from deploy.orchestrator import DeployOrchestrator
from deploy.placeholders import placeholder_values, substitute


async def loaded(catalog, files):
    await catalog.load_all(force_reload=True)
    return catalog.get(files.fingerprint)


async def deploy_with(catalog, fingerprint, actions, orchestrator=None):
    await catalog.update_config(fingerprint, {"deployActions": actions})
    orchestrator = orchestrator or DeployOrchestrator()
    return await orchestrator.deploy(catalog.get(fingerprint), catalog)


@pytest.mark.asyncio
async def test_placeholders(catalog, make_cert):
    certificate = await loaded(catalog, make_cert("web.example.com", domains=["web.example.com", "a.example.com"]))
    values = placeholder_values(certificate)

    assert substitute("{name}:{domain}:{domains}", values) == "web.example.com:a.example.com:a.example.com,web.example.com"
    assert substitute("{cert_path}", values) == certificate.cert_path
    assert substitute("{unknown} {fingerprint}", values) == f"{{unknown}} {certificate.fingerprint}"


@pytest.mark.asyncio
async def test_copy_generates_fullchain(catalog, make_cert, tmp_path):
    root = make_cert("root-ca", is_ca=True)
    leaf = make_cert("web", issuer=root)
    await catalog.load_all(force_reload=True)
    target = tmp_path / "out" / "{name}-fullchain.pem"

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "copy", "source": "fullchain", "destination": str(target), "permissions": "640"},
        {"type": "copy", "source": "key", "destination": str(tmp_path / "out" / "web.key"), "verify": True},
    ])

    assert result["success"], result
    assert result["actionsExecuted"] == 2
    fullchain = (tmp_path / "out" / "web-fullchain.pem").read_bytes()
    assert fullchain == Path(leaf.cert_path).read_bytes() + Path(root.cert_path).read_bytes()
    assert stat.S_IMODE(os.stat(tmp_path / "out" / "web-fullchain.pem").st_mode) == 0o640


@pytest.mark.asyncio
async def test_actions_run_in_order_and_failures_do_not_stop_the_list(catalog, make_cert, tmp_path, monkeypatch):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    marker = tmp_path / "marker.txt"

    def refused(**kwargs):
        raise OSError("Connection refused")

    monkeypatch.setattr("deploy.actions.remote.asyncssh.connect", refused)
    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "copy", "source": "cert", "destination": str(tmp_path / "copy.crt")},
        {"type": "ssh-copy", "host": "10.0.0.9", "username": "deploy", "password": "hunter2",
         "source": "cert", "destination": "/etc/ssl/web.crt"},
        {"type": "webhook", "url": "http://127.0.0.1:1/never", "enabled": False},
        {"type": "bogus"},
        {"type": "command", "command": f"echo {{name}} > {marker}"},
    ])

    assert result["success"] is False
    assert result["actionsExecuted"] == 4
    assert [detail["type"] for detail in result["details"]] == ["copy", "ssh-copy", "bogus", "command"]
    assert [detail["success"] for detail in result["details"]] == [True, False, False, True]
    ssh_failure, bogus_failure = result["failures"]
    assert ssh_failure["errorKind"] == "IOError"
    assert ssh_failure["action"]["password"] == "********"
    assert bogus_failure["errorKind"] == "Malformed"
    assert marker.read_text().strip() == "web"


@pytest.mark.asyncio
async def test_failing_and_slow_commands(catalog, make_cert):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "command", "command": "echo broken >&2; exit 3"},
        {"type": "command", "command": "sleep 5", "timeout": 0.2},
    ])

    first, second = result["failures"]
    assert first["errorKind"] == "IOError" and "broken" in first["error"]
    assert second["errorKind"] == "Cancelled"


@pytest.mark.asyncio
async def test_command_environment(catalog, make_cert, tmp_path):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    output = tmp_path / "env.txt"

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "command", "command": f"echo $CERT_FILE > {output}", "cwd": str(tmp_path),
         "env": {"CERT_FILE": "{cert_path}"}},
    ])

    assert result["success"], result
    assert output.read_text().strip() == leaf.cert_path


@pytest.mark.asyncio
async def test_webhook_and_api_call(catalog, make_cert):
    leaf = make_cert("web", domains=["web.example.com"])
    await catalog.load_all(force_reload=True)
    received = {}

    async def hook(request):
        received["hook"] = (request.headers.get("Authorization"), await request.json())
        return web.json_response({"ok": True})

    async def upload(request):
        form = await request.post()
        received["upload"] = (request.headers.get("X-API-Key"), form["certificate"].filename, form["host"])
        return web.json_response({"ok": True})

    async def broken(request):
        return web.Response(status=500, text="nope")

    app = web.Application()
    app.router.add_post("/hook", hook)
    app.router.add_put("/upload", upload)
    app.router.add_post("/broken", broken)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        result = await deploy_with(catalog, leaf.fingerprint, [
            {"type": "webhook", "url": str(server.make_url("/hook")), "token": "t0k",
             "includeCustomData": True, "customData": {"target": "{domain}"}},
            {"type": "api-call", "url": str(server.make_url("/upload")), "method": "PUT", "sendFiles": True,
             "apiKey": "k3y", "data": {"host": "{name}"}},
            {"type": "api-call", "url": str(server.make_url("/broken")), "jsonPayload": {"a": 1}},
        ])
    finally:
        await server.close()

    authorization, payload = received["hook"]
    assert authorization == "Bearer t0k"
    assert payload["event"] == "certificate.deployed"
    assert payload["certificate"]["fingerprint"] == leaf.fingerprint
    assert payload["customData"] == {"target": "web.example.com"}
    assert received["upload"] == ("k3y", "web.crt", "web")
    assert [failure["errorKind"] for failure in result["failures"]] == ["IOError"]
    assert "500" in result["failures"][0]["error"]


class FakeSMTP:
    sent = []
    timeouts = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        FakeSMTP.timeouts.append(timeout)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, user, password):
        self.user = user

    def send_message(self, message, to_addrs=None):
        FakeSMTP.sent.append((self.host, message, to_addrs))


@pytest.mark.asyncio
async def test_email_uses_default_smtp(catalog, make_cert, monkeypatch):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    FakeSMTP.sent = []
    FakeSMTP.timeouts = []
    monkeypatch.setattr("deploy.actions.mail.smtplib.SMTP", FakeSMTP)
    orchestrator = DeployOrchestrator(DeployConfig(smtp={"host": "mail.example.com", "port": 25}))

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "email", "to": "ops@example.com, sec@example.com", "bcc": ["audit@example.com"],
         "attachCertificates": ["cert"]},
    ], orchestrator)

    assert result["success"], result
    host, message, to_addrs = FakeSMTP.sent[0]
    assert host == "mail.example.com"
    assert message["Subject"] == "Certificate Update: web"
    assert to_addrs == ["ops@example.com", "sec@example.com", "audit@example.com"]
    assert [part.get_filename() for part in message.iter_attachments()] == ["web.crt"]
    assert FakeSMTP.timeouts == [60]


@pytest.mark.asyncio
async def test_email_without_smtp_host(catalog, make_cert):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    result = await deploy_with(catalog, leaf.fingerprint, [{"type": "email", "to": "ops@example.com"}])
    assert result["failures"][0]["errorKind"] == "Malformed"


@pytest.mark.asyncio
async def test_smb_without_extra_is_unavailable(catalog, make_cert, monkeypatch):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    monkeypatch.setattr("deploy.actions.remote.smbclient", None)

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "smb-copy", "host": "fs", "share": "certs", "source": "cert", "destination": "web.crt"},
    ])
    assert result["failures"][0]["errorKind"] == "FeatureUnavailable"


class FakeSmbClient:
    def __init__(self):
        self.sessions = []
        self.files = {}

    def register_session(self, server, **kwargs):
        self.sessions.append((server, kwargs))

    def makedirs(self, path, exist_ok=False):
        pass

    def open_file(self, path, mode="rb"):
        client = self

        class RemoteFile(io.BytesIO):
            def close(self):
                client.files[path] = self.getvalue()
                super().close()

        return RemoteFile()


@pytest.mark.asyncio
async def test_smb_session_uses_action_timeout(catalog, make_cert, monkeypatch):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    client = FakeSmbClient()
    monkeypatch.setattr("deploy.actions.remote.smbclient", client)

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "smb-copy", "host": "fs", "share": "certs", "source": "cert", "destination": "web.crt",
         "timeout": 15},
    ])

    assert result["success"], result
    server, options = client.sessions[0]
    assert server == "fs"
    assert options["connection_timeout"] == 15
    assert client.files["\\\\fs\\certs\\web.crt"] == Path(leaf.cert_path).read_bytes()


class FakeContainer:
    def __init__(self, name, container_id):
        self.name = name
        self.id = container_id
        self.status = "running"
        self.restarted = 0
        self.archives = []

    def restart(self):
        self.restarted += 1

    def reload(self):
        pass

    def put_archive(self, path, data):
        self.archives.append((path, data))
        return True


class FakeDockerClient:
    def __init__(self, containers):
        self.containers = self
        self._containers = containers

    def list(self, all=False):  # pylint: disable=redefined-builtin
        return self._containers


@pytest.mark.asyncio
async def test_docker_restart_and_npm_container(catalog, make_cert, monkeypatch):
    leaf = make_cert("web.example.com")
    await catalog.load_all(force_reload=True)
    nginx = FakeContainer("/nginx", "abc123")
    npm = FakeContainer("npm", "def456")
    timeouts = []

    def from_env(timeout=None):
        timeouts.append(timeout)
        return FakeDockerClient([nginx, npm])

    monkeypatch.setattr("deploy.actions.containers.docker.from_env", from_env)
    monkeypatch.setattr("deploy.actions.containers.RESTART_SETTLE_SECONDS", 0)

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "docker-restart", "containerName": "nginx", "verify": True, "timeout": 12},
        {"type": "nginx-proxy-manager", "dockerContainer": "npm"},
        {"type": "docker-restart", "containerId": "zzz"},
    ])

    assert nginx.restarted == 1
    assert npm.restarted == 1
    assert npm.archives[0][0] == "/etc/letsencrypt/live"
    assert timeouts == [12, 60, 60]
    assert [failure["errorKind"] for failure in result["failures"]] == ["NotFound"]


@pytest.mark.asyncio
async def test_npm_local_install(catalog, make_cert, tmp_path):
    leaf = make_cert("web.example.com")
    await catalog.load_all(force_reload=True)

    result = await deploy_with(catalog, leaf.fingerprint, [
        {"type": "nginx-proxy-manager", "npmPath": str(tmp_path / "npm"), "verify": True},
    ])

    assert result["success"], result
    live = tmp_path / "npm" / "letsencrypt" / "live" / "custom-web-example-com"
    assert (live / "fullchain.pem").read_bytes() == Path(leaf.cert_path).read_bytes()
    assert (live / "privkey.pem").read_bytes() == Path(leaf.key_path).read_bytes()
    assert (tmp_path / "npm" / "reload.nginx").exists()


@pytest.mark.asyncio
async def test_context_cleans_up_generated_files(catalog, make_cert):
    root = make_cert("root-ca", is_ca=True)
    leaf = make_cert("web", issuer=root)
    await catalog.load_all(force_reload=True)
    context = DeployContext(catalog.get(leaf.fingerprint), catalog)

    chain_path = context.resolve_source("chain")
    assert Path(chain_path).read_bytes() == Path(root.cert_path).read_bytes()
    assert context.values["chain_path"] == chain_path

    context.cleanup()
    assert not os.path.exists(chain_path)


@pytest.mark.asyncio
async def test_renewal_triggers_deployment(catalog, make_cert, tmp_path):
    leaf = make_cert("web")
    await catalog.load_all(force_reload=True)
    target = tmp_path / "deployed.crt"
    await catalog.update_config(leaf.fingerprint, {
        "deployActions": [{"type": "copy", "source": "cert", "destination": str(target)}],
    })

    result = await catalog.renew_and_deploy(leaf.fingerprint)

    assert result["deployResult"]["success"]
    assert target.read_bytes() == Path(leaf.cert_path).read_bytes()
    assert catalog.get(result["renewalResult"]["fingerprint"]).config.deploy_actions


@pytest.mark.asyncio
async def test_network_actions_share_the_parallel_limit(catalog, make_cert, monkeypatch):
    first = make_cert("first")
    second = make_cert("second")
    await catalog.load_all(force_reload=True)
    orchestrator = DeployOrchestrator(DeployConfig(max_parallel=1))
    running = []
    peak = []

    async def slow_send(self, method, url, **kwargs):
        running.append(url)
        peak.append(len(running))
        await asyncio.sleep(0.05)
        running.remove(url)
        return "ok"

    monkeypatch.setattr("deploy.actions.web.HttpAction.send", slow_send)
    for files in (first, second):
        await catalog.update_config(files.fingerprint, {"deployActions": [
            {"type": "webhook", "url": f"http://hooks.example.com/{files.fingerprint[:8]}"},
        ]})

    results = await asyncio.gather(
        orchestrator.deploy(catalog.get(first.fingerprint), catalog),
        orchestrator.deploy(catalog.get(second.fingerprint), catalog),
    )

    assert all(result["success"] for result in results)
    assert max(peak) == 1
