import base64
import json
from unittest import mock

import pytest
import requests

from regbot.client import ServiceClient, load_docker_credentials
from regbot.config import Defaults, HostConfig, RunnerConfig
from regbot.context import background, with_timeout
from regbot.errors import Canceled
from regbot.gate import ConcurrencyGate


def _docker_config(tmp_path, auths):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"auths": auths}))
    return path


def _auth(user, password):
    return base64.b64encode(f"{user}:{password}".encode()).decode()


def _response(status=200):
    response = requests.Response()
    response.status_code = status
    return response


def test_load_docker_credentials(tmp_path):
    path = _docker_config(tmp_path, {
        "https://index.docker.io/v1/": {"auth": _auth("hubuser", "hubpass")},
        "ghcr.io": {"identitytoken": "tok"},
    })

    hosts = {h.registry: h for h in load_docker_credentials(path)}

    assert hosts["docker.io"].user == "hubuser"
    assert hosts["docker.io"].password == "hubpass"
    assert hosts["ghcr.io"].token == "tok"


def test_missing_or_broken_docker_config(tmp_path):
    assert load_docker_credentials(tmp_path / "missing.json") == []

    broken = tmp_path / "broken.json"
    broken.write_text("{")
    assert load_docker_credentials(broken) == []


def test_from_config_prefers_config_creds(tmp_path):
    docker = _docker_config(tmp_path, {"registry.example.org": {"auth": _auth("docker", "x")}})
    config = RunnerConfig(creds=[HostConfig(registry="registry.example.org", user="config", password="y")])

    client = ServiceClient.from_config(config, docker_config=docker)
    assert client.host("registry.example.org").user == "config"


def test_from_config_skips_docker_config(tmp_path):
    docker = _docker_config(tmp_path, {"ghcr.io": {"auth": _auth("docker", "x")}})
    config = RunnerConfig(defaults=Defaults(skip_docker_config=True))

    client = ServiceClient.from_config(config, docker_config=docker)
    assert client.hosts == {}


def test_user_agent():
    client = ServiceClient()
    assert client.session.headers["User-Agent"].startswith("regclient/regbot")


def test_base_url():
    client = ServiceClient(hosts=[
        HostConfig(registry="local", hostname="localhost:5000", tls="disabled"),
        HostConfig(registry="mirror.example.org", path_prefix="/proxy/"),
    ])
    assert client.base_url("local") == "http://localhost:5000"
    assert client.base_url("mirror.example.org") == "https://mirror.example.org/proxy"
    assert client.base_url("docker.io") == "https://registry-1.docker.io"
    assert client.base_url("quay.io") == "https://quay.io"


def test_request_uses_credentials_and_gate():
    gate = ConcurrencyGate(1)
    client = ServiceClient(hosts=[
        HostConfig(registry="basic.example.org", user="bot", password="pw", tls="insecure"),
        HostConfig(registry="token.example.org", token="abc"),
    ])
    seen = []

    def fake_request(method, url, **kwargs):
        seen.append((method, url, kwargs, gate.in_use))
        return _response()

    ctx = with_timeout(background(), 10)
    with mock.patch.object(client.session, "request", side_effect=fake_request):
        client.request(ctx, "GET", "basic.example.org", "/v2/", gate=gate)
        client.request(ctx, "HEAD", "token.example.org", "v2/repo/manifests/latest", gate=gate)

    (m1, url1, kw1, in_use1), (m2, url2, kw2, in_use2) = seen
    assert (m1, url1) == ("GET", "https://basic.example.org/v2/")
    assert kw1["auth"] == ("bot", "pw")
    assert kw1["verify"] is False
    assert 0 < kw1["timeout"] <= 10
    assert in_use1 == 1

    assert (m2, url2) == ("HEAD", "https://token.example.org/v2/repo/manifests/latest")
    assert kw2["headers"]["Authorization"] == "Bearer abc"
    assert kw2["auth"] is None
    assert kw2["verify"] is True
    assert in_use2 == 1

    assert gate.in_use == 0


def test_request_without_deadline_uses_default_timeout():
    client = ServiceClient()
    with mock.patch.object(client.session, "request", return_value=_response()) as request:
        client.request(background(), "GET", "quay.io", "/v2/")
    assert request.call_args.kwargs["timeout"] == 30


def test_request_with_cancelled_context():
    client = ServiceClient()
    ctx = background()
    ctx.cancel()
    with mock.patch.object(client.session, "request") as request:
        with pytest.raises(Canceled):
            client.request(ctx, "GET", "quay.io", "/v2/")
    request.assert_not_called()


def test_request_failure_releases_gate():
    gate = ConcurrencyGate(1)
    client = ServiceClient()
    with mock.patch.object(client.session, "request", return_value=_response(404)):
        with pytest.raises(requests.exceptions.HTTPError):
            client.request(background(), "GET", "quay.io", "/v2/missing", gate=gate)
    assert gate.in_use == 0
