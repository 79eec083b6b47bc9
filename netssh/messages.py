from typing import Dict

MESSAGE_LEN = 31

_messages: Dict[str, bytes] = {}


def must_message(content: str, registry: Dict[str, bytes] = _messages) -> bytes:
    """
    Build a fixed-length handshake message.

    The content is encoded as ASCII and right-padded with zero bytes to MESSAGE_LEN.
    Messages are registered so that two handshake messages can never collide.

    Args:
        content: The message literal.
        registry: Registry of messages built so far.

    Returns:
        The MESSAGE_LEN byte frame.

    Raises:
        ValueError: If the content is too long, not ASCII or already registered.
    """
    if len(content) > MESSAGE_LEN:
        raise ValueError(f"message must not be longer than {MESSAGE_LEN} bytes: {content!r}")
    try:
        raw = content.encode("ascii")
    except UnicodeEncodeError:
        raise ValueError(f"message must only contain ascii characters: {content!r}")
    frame = raw + bytes(MESSAGE_LEN - len(raw))
    if content in registry or frame in registry.values():
        raise ValueError(f"duplicate message: {content!r}")
    registry[content] = frame
    return frame


BANNER_MSG = must_message("SSHCON_HELO")
PROXY_ERROR_MSG = must_message("SSHCON_PROXY_ERROR")
BEGIN_MSG = must_message("SSHCON_BEGIN")

# Status byte written by the accept side to the control socket when a connection closes.
STATUS_OK = 0
STATUS_ABNORMAL = 1
