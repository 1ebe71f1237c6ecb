"""
Host entry point: length-prefixed JSON over stdin/stdout.

Each frame is a 4-byte native-endian unsigned length followed by a UTF-8
JSON document. Requests are dispatched to Orchestrator.handle_message:

    {"type": "ping"}
    {"type": "process", "payload": {"messages": [...], "userExcludeKeywords": [...]}}
    {"type": "health"}
    {"type": "stats"}
"""

import json
import struct
import sys

from smsledger.__version__ import __version__
from smsledger.core.orchestrator import Orchestrator
from smsledger.utils.config import load_config
from smsledger.utils.logger import logger, set_level


def get_message(stream=None):
    """Read one frame. None when the stream is closed."""
    stream = stream or sys.stdin.buffer
    raw_length = stream.read(4)
    if len(raw_length) < 4:
        return None
    message_length = struct.unpack("@I", raw_length)[0]
    message = stream.read(message_length).decode("utf-8")
    return json.loads(message)


def send_message(message_content, stream=None):
    """Write one frame."""
    stream = stream or sys.stdout.buffer
    encoded_content = json.dumps(message_content, ensure_ascii=False).encode("utf-8")
    stream.write(struct.pack("@I", len(encoded_content)))
    stream.write(encoded_content)
    stream.flush()


def serve(orchestrator, stdin=None, stdout=None) -> int:
    """Request loop. Returns the number of handled requests."""
    handled = 0
    while True:
        try:
            message = get_message(stdin)
            if message is None:
                logger.info("Stdin closed, exiting.")
                break

            logger.info(f"Received message type: {message.get('type')}")
            send_message(orchestrator.handle_message(message), stdout)
            handled += 1

        except Exception as e:
            logger.error(f"Critical Error in Main Loop: {e}", exc_info=True)
            send_message({"status": "error", "error": str(e)}, stdout)
    return handled


def main():
    config = load_config()
    set_level(config.get("log_level", "INFO"))
    logger.info(f"smsledger {__version__} started")
    serve(Orchestrator.from_config(config))


if __name__ == "__main__":
    main()
