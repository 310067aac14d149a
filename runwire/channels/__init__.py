from .adapter import translate
from .protocol import Binary, Frame, Reply, decode_frame, encode_frame, encode_reply
from .run_channel import RunChannel
from .socket import ChannelRegistry, WorkerSocket
from .worker_channel import QUEUE_TOPIC, WorkerChannel

__all__ = [
    "Binary",
    "ChannelRegistry",
    "Frame",
    "QUEUE_TOPIC",
    "Reply",
    "RunChannel",
    "WorkerChannel",
    "WorkerSocket",
    "decode_frame",
    "encode_frame",
    "encode_reply",
    "translate",
]
