import json

import pytest

from conftest import build_connect
from run.capture_main import main


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for k in ("MQTT_CAPTURE_PORT", "MQTT_CAPTURE_CERT", "MQTT_CAPTURE_KEY", "MQTT_CAPTURE_LOG_LEVEL"):
        monkeypatch.delenv(k, raising=False)


def _never_bound(_port):
    return False


def test_parse_anonymous(tmp_path, capsys):
    p = tmp_path / "cap.bin"
    p.write_bytes(build_connect("fan01"))
    assert main(["parse", str(p)]) == 0
    out = capsys.readouterr().out
    assert "fan01" in out
    assert "匿名" in out
    assert "mosquitto_passwd" not in out


def test_parse_credentials_json(tmp_path, capsys):
    p = tmp_path / "cap.bin"
    p.write_bytes(build_connect("fan01", username="device123", password=b"\xde\xad\xbe\xef"))
    assert main(["parse", str(p), "--json"]) == 0
    d = json.loads(capsys.readouterr().out)
    assert d["username"] == "device123"
    assert d["password"] == "deadbeef"
    assert d["password_is_hex"] is True


def test_parse_garbage_exit_code(tmp_path, capsys):
    p = tmp_path / "cap.bin"
    p.write_bytes(b"\x16\x03\x01" + bytes(20))   # 像是没被终止的 TLS ClientHello
    assert main(["parse", str(p)]) == 4
    err = capsys.readouterr().err
    assert "unexpected frame type" in err
    assert "160301" in err


def test_parse_missing_file(tmp_path):
    assert main(["parse", str(tmp_path / "missing.bin")]) == 2


def test_listen_missing_cert(tmp_path, capsys):
    rc = main(["--cert", str(tmp_path / "x.crt"), "--key", str(tmp_path / "x.key"), "--timeout", "1"],
              port_in_use=_never_bound)
    assert rc == 2
    assert "gen-cert" in capsys.readouterr().err


def test_listen_invalid_port_is_setup_error(cert_pair, capsys):
    cert, key = cert_pair
    assert main(["listen", "--cert", cert, "--key", key, "--port", "70000"]) == 2
    assert "配置无效" in capsys.readouterr().err


def test_listen_timeout(cert_pair, free_port, capsys):
    cert, key = cert_pair
    rc = main(["listen", "--cert", cert, "--key", key, "--host", "127.0.0.1",
               "--port", str(free_port), "--timeout", "1"], port_in_use=_never_bound)
    assert rc == 3
    assert "nslookup" in capsys.readouterr().err


def test_listen_end_to_end(cert_pair, free_port, device_client, capsys):
    cert, key = cert_pair
    device_client(free_port, build_connect("fan01", username="device123", password="hunter2"))
    rc = main(["listen", "--cert", cert, "--key", key, "--host", "127.0.0.1",
               "--port", str(free_port), "--timeout", "10", "--stop-on-frame"],
              port_in_use=_never_bound)
    assert rc == 0
    out = capsys.readouterr().out
    assert "device123" in out
    assert "hunter2" in out
    assert "mosquitto_passwd" in out


def test_gen_cert(tmp_path, capsys):
    crt, key = str(tmp_path / "d.crt"), str(tmp_path / "d.key")
    assert main(["gen-cert", "--hostname", "collector.example.com", "--cert", crt, "--key", key]) == 0
    assert crt in capsys.readouterr().out
    assert main(["gen-cert", "--hostname", "collector.example.com", "--cert", crt, "--key", key]) == 2
