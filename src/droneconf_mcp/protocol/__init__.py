"""Protocol layer: framing, CRC, message builders, and frame parsing."""

from .framing import Frame, FrameDecoder, build_frame, parse_frame
from .messages import CommandId, CommandResult, MessageId
from .parser import parse_message
