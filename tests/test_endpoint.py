import pytest

from netssh.endpoint import Endpoint


def test_cmd_args_defaults():
    endpoint = Endpoint(host="example.org", user="tunnel", identity_file="/keys/id")

    cmd, args, env = endpoint.cmd_args()

    assert cmd == "ssh"
    assert args == ["-p", "22", "-T", "-i", "/keys/id", "-o", "BatchMode=yes", "tunnel@example.org"]
    assert env == {}


def test_cmd_args_with_options_and_custom_command():
    endpoint = Endpoint(
        host="10.0.0.1",
        user="root",
        port=2222,
        identity_file="/k",
        ssh_command="/opt/bin/ssh",
        options=("StrictHostKeyChecking=no", "ConnectTimeout=5"),
    )

    cmd, args, env = endpoint.cmd_args()

    assert cmd == "/opt/bin/ssh"
    assert args == [
        "-p", "2222",
        "-T",
        "-i", "/k",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=no",
        "-o", "ConnectTimeout=5",
        "root@10.0.0.1",
    ]
    assert env == {}


def test_endpoint_is_immutable():
    endpoint = Endpoint(host="h", user="u")
    with pytest.raises(AttributeError):
        endpoint.host = "other"
