"""Asynchronous video clip export: job queue, worker and ffmpeg transcoding."""

__version__ = "0.1.0"
