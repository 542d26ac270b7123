# Data layer: OpenF1 client, record parsing and time-series buffers

from .buffer import Bracket, BracketStatus, BufferStore, TimeSeriesBuffer
from .channels import CHANNELS, ChannelSpec, Sample, get_channel
from .openf1 import OpenF1Client

__all__ = [
    'Bracket',
    'BracketStatus',
    'BufferStore',
    'TimeSeriesBuffer',
    'CHANNELS',
    'ChannelSpec',
    'Sample',
    'get_channel',
    'OpenF1Client',
]
