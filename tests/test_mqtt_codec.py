import json

import pytest

from conftest import build_connect, encode_varint
from sniffer.errors import MqttDecodeError
from sniffer.mqtt_codec import MqttCodec, parse_connect_frame


def test_anonymous_device():
    """✅ 只有 clean session 标志的匿名设备"""
    buf = build_connect("fan01")
    assert buf[9] == 0x02  # flags 字节

    f = parse_connect_frame(buf)
    assert f.protocol_name == "MQTT"
    assert f.protocol_level == 4
    assert f.flags == 0x02
    assert f.clean_session is True
    assert f.client_id == "fan01"
    assert f.keep_alive == 60
    assert f.username_present is False and f.username is None
    assert f.password_present is False and f.password is None
    assert f.will_present is False and f.will_topic is None and f.will_message is None
    assert f.credential_action_required is False


def test_credentialed_device_binary_password():
    """✅ 0xC2：用户名 + 非 UTF-8 密码 -> 十六进制"""
    buf = build_connect("fan02", username="device123", password=b"\xde\xad\xbe\xef")
    assert buf[9] == 0xC2

    f = MqttCodec.decode_connect(buf)
    assert f.username == "device123"
    assert f.password == "deadbeef"
    assert f.password_is_hex is True
    assert f.credential_action_required is True


def test_text_password_kept_as_text():
    f = MqttCodec.decode_connect(build_connect("c", username="u", password="pässword"))
    assert f.password == "pässword"
    assert f.password_is_hex is False


@pytest.mark.parametrize("kwargs", [
    dict(client_id="fan01"),
    dict(client_id="", clean_session=False, keep_alive=0),
    dict(client_id="dev", keep_alive=65535, username="user:with:colons", password="s3cret"),
    dict(client_id="dev", username="only-user"),
    dict(client_id="dev", password=b"\x00\xff"),
    dict(client_id="w", will=("status/offline", b"\x01\x02bye", 1, True), username="u", password="p"),
    dict(client_id="w", will=("t", b"", 2, False)),
    dict(client_id="客户端", protocol_name="MQIsdp", level=3),
])
def test_round_trip(kwargs):
    buf = build_connect(**kwargs)
    f = MqttCodec.decode_connect(buf)

    assert f.client_id == (kwargs.get("client_id") or "")
    assert f.protocol_name == kwargs.get("protocol_name", "MQTT")
    assert f.protocol_level == kwargs.get("level", 4)
    assert f.clean_session is kwargs.get("clean_session", True)
    assert f.keep_alive == kwargs.get("keep_alive", 60)
    assert f.remaining_length == len(buf) - 2

    will = kwargs.get("will")
    if will:
        assert (f.will_topic, f.will_message, f.will_qos, f.will_retain) == will
    else:
        assert f.will_topic is None and f.will_qos == 0 and f.will_retain is False

    assert f.username == kwargs.get("username")

    pw = kwargs.get("password")
    if pw is None:
        assert f.password is None
    elif isinstance(pw, bytes):
        assert f.password == pw.hex() and f.password_is_hex
    else:
        assert f.password == pw and not f.password_is_hex


@pytest.mark.parametrize("kwargs", [
    dict(),
    dict(username="u"),
    dict(password="p"),
    dict(username="u", password="p"),
    dict(will=("t", b"m", 0, False)),
    dict(will=("t", b"m", 1, False), username="u", password=b"\xff"),
])
def test_optional_fields_follow_flags(kwargs):
    f = MqttCodec.decode_connect(build_connect("id", **kwargs))
    assert (f.username is not None) == f.username_present
    assert (f.password is not None) == f.password_present
    assert (f.will_topic is not None) == f.will_present
    assert (f.will_message is not None) == f.will_present


def test_every_truncation_point_reports_its_offset():
    buf = build_connect("fan01", will=("a/b", b"msg", 1, False), username="device123", password="pw")
    for cut in range(10, len(buf)):
        with pytest.raises(MqttDecodeError) as ei:
            MqttCodec.decode_connect(buf[:cut])
        err = ei.value
        assert err.offset == cut, cut
        assert err.reason == f"truncated {err.field}"


@pytest.mark.parametrize("cut,field,field_offset", [
    (10, "keep alive", 10),
    (11, "keep alive", 10),
    (12, "client id", 12),
    (13, "client id", 12),
    (16, "client id", 14),      # 长度前缀已读完，内容不足
])
def test_truncation_names_field(cut, field, field_offset):
    buf = build_connect("fan01", username="u")
    with pytest.raises(MqttDecodeError) as ei:
        MqttCodec.decode_connect(buf[:cut])
    assert ei.value.field == field
    assert ei.value.field_offset == field_offset
    assert ei.value.hexdump == buf[:cut].hex()


def test_flag_without_bytes_is_error_not_empty():
    """❌ 用户名标志置位但后面没有数据"""
    buf = bytearray(build_connect("fan01"))
    buf[9] |= 0x80
    with pytest.raises(MqttDecodeError) as ei:
        MqttCodec.decode_connect(bytes(buf))
    assert ei.value.reason == "truncated username"
    assert ei.value.offset == len(buf)


def test_unexpected_frame_type(monkeypatch):
    """❌ 首字节不是 0x10：偏移 0，且不再继续解码"""
    buf = b"\x20" + build_connect("fan01")[1:]

    def _boom(*_a, **_kw):
        raise AssertionError("不应继续解码")

    monkeypatch.setattr(MqttCodec, "_mqtt_varint", staticmethod(_boom))
    with pytest.raises(MqttDecodeError) as ei:
        MqttCodec.decode_connect(buf)
    assert (ei.value.reason, ei.value.offset) == ("unexpected frame type", 0)
    assert "0x20" in str(ei.value)


@pytest.mark.parametrize("buf", [b"", b"\x10", b"\x10\x08\x00\x04MQT", bytes(9)])
def test_too_short(buf):
    with pytest.raises(MqttDecodeError) as ei:
        MqttCodec.decode_connect(buf)
    assert (ei.value.reason, ei.value.offset) == ("too short", 0)


@pytest.mark.parametrize("value,encoded", [
    (0, b"\x00"),
    (127, b"\x7f"),
    (128, b"\x80\x01"),
    (16383, b"\xff\x7f"),
    (16384, b"\x80\x80\x01"),
    (2097151, b"\xff\xff\x7f"),
    (2097152, b"\x80\x80\x80\x01"),
    (268435455, b"\xff\xff\xff\x7f"),
])
def test_remaining_length_widths(value, encoded):
    assert encode_varint(value) == encoded
    assert MqttCodec._mqtt_varint(b"\x10" + encoded, 1) == (value, 1 + len(encoded))

    # 声明值不约束后续字段：任意宽度都能完整解析
    f = MqttCodec.decode_connect(build_connect("fan01", remaining_length=encoded))
    assert f.remaining_length == value
    assert f.client_id == "fan01"


def test_remaining_length_fifth_byte_is_malformed():
    buf = b"\x10\xff\xff\xff\xff\x01" + build_connect("fan01")[2:]
    with pytest.raises(MqttDecodeError) as ei:
        MqttCodec.decode_connect(buf)
    assert ei.value.reason == "malformed remaining length"
    assert ei.value.offset == 4
    assert ei.value.field == "remaining length"


def test_invalid_utf8_text_fields_are_replaced():
    f = MqttCodec.decode_connect(build_connect(b"fan\xff01", username=b"us\xfeer"))
    assert f.client_id == "fan�01"
    assert f.username == "us�er"


def test_trailing_bytes_ignored():
    buf = build_connect("fan01") + b"\xc0\x00"   # 后面紧跟 PINGREQ
    assert MqttCodec.decode_connect(buf).client_id == "fan01"


def test_frame_length():
    buf = build_connect("fan01", username="u", password="p")
    assert MqttCodec.frame_length(buf) == len(buf)
    assert MqttCodec.frame_length(buf + b"\xc0\x00") == len(buf)
    assert MqttCodec.frame_length(buf[:-1]) is None
    assert MqttCodec.frame_length(b"\x10") is None
    assert MqttCodec.frame_length(b"\x10\xff\xff\xff\xff\x01") is None


def test_to_json_encodes_bytes_as_hex():
    f = MqttCodec.decode_connect(build_connect("w", will=("t", b"\x01\xab", 0, False)))
    d = json.loads(f.to_json())
    assert d["will_message"] == "01ab"
    assert d["client_id"] == "w"
    assert "username" not in json.loads(f.to_json(drop_none=True))
