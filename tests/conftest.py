import asyncio
import os
import re
import shutil
import tempfile
import time

import asyncssh
import docker
import pytest
import pytest_asyncio

from netssh.serve import listen

SSHD_IMAGE_NAME = "netssh-sshd"
SSHD_CONTAINER_NAME = "netssh-test-sshd"
SSHD_DOCKERFILE = "tests/docker/sshd-netssh/Dockerfile"
TEST_SSH_USER = "netssh"


@pytest.fixture
def sock_path():
    # short path, AF_UNIX addresses are limited to 108 bytes
    with tempfile.TemporaryDirectory(prefix="netssh") as d:
        yield os.path.join(d, "server.sock")


@pytest_asyncio.fixture
async def listener(sock_path):
    server = listen(sock_path)
    yield server
    server.close()


@pytest.fixture(scope="session")
def ssh_key():
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture(scope="session")
def docker_client():
    if shutil.which("ssh") is None:
        pytest.skip("no ssh client installed")
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as e:
        pytest.skip(f"docker is not available: {e}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def docker_host_ip():
    docker_host = os.environ.get("DOCKER_HOST")

    regex = r"^(?:(tcp|unix)://)?([a-zA-Z0-9.-]+)(?::\d+)?$"

    if docker_host:
        match = re.match(regex, docker_host)
        if match:
            protocol, host = match.groups()
            if protocol == "unix":
                return "localhost"
            return host
    return "localhost"


@pytest.fixture(scope="session")
def sshd_server(docker_client: docker.DockerClient, docker_host_ip, ssh_key):
    """
    An sshd container whose test user is forced into ``netssh proxy``, with
    ``netssh serve`` echoing on the other end of the socket.
    """
    try:
        existing = docker_client.containers.get(SSHD_CONTAINER_NAME)
        existing.remove(force=True)
    except docker.errors.NotFound:
        pass

    print(f"\nBuilding Docker image '{SSHD_IMAGE_NAME}' from '{SSHD_DOCKERFILE}'...")
    try:
        docker_client.images.build(tag=SSHD_IMAGE_NAME, path=".", dockerfile=SSHD_DOCKERFILE, rm=True)
    except docker.errors.BuildError as e:
        for line in e.build_log:
            print(line)
        raise RuntimeError(f"Failed to build Docker image '{SSHD_IMAGE_NAME}'.")

    container = docker_client.containers.run(
        SSHD_IMAGE_NAME,
        detach=True,
        ports={"2222/tcp": None},
        name=SSHD_CONTAINER_NAME,
        environment={"PUBLIC_KEY": ssh_key.export_public_key().decode().strip()},
    )

    try:
        host_port = None
        for _ in range(30):
            container.reload()
            if container.ports.get("2222/tcp"):
                host_port = int(container.ports["2222/tcp"][0]["HostPort"])
                break
            time.sleep(1)
        if not host_port:
            raise RuntimeError("Port 2222 not exposed")

        async def check_ssh():
            try:
                conn = await asyncssh.connect(
                    docker_host_ip,
                    port=host_port,
                    username=TEST_SSH_USER,
                    client_keys=[ssh_key],
                    known_hosts=None,
                )
                conn.close()
                return True
            except (asyncssh.Error, OSError):
                return False

        for _ in range(60):
            if asyncio.run(check_ssh()):
                break
            time.sleep(1)
        else:
            print(container.logs().decode("utf-8"))
            raise RuntimeError("SSH Server not ready")

        yield docker_host_ip, host_port, TEST_SSH_USER

    finally:
        print("================ Logs ================")
        try:
            print(container.logs().decode("utf-8"))
        except docker.errors.APIError:
            pass
        print("======================================")
        container.remove(force=True)
