# ApexLive Replay
# Buffered replay and interpolation of OpenF1 timing and telemetry

__version__ = "0.1.0"
