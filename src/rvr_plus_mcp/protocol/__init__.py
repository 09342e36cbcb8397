"""Protocol layer: framing, correlation, command builders and frame classification."""

from .framing import Frame, FrameBuffer, FrameFormat, build_frame
from .commands import CommandId, DeviceId
from .correlation import ResponseCorrelator, SequenceCounter
from .parser import classify_frame
