"""livecast - Live audio broadcasting to Icecast and Shoutcast servers.

This package captures an input device, runs it through a gain, compressor
and equalizer chain, and streams it to a server through a WebSocket relay,
a user-hosted proxy or a direct HTTP upload, optionally recording locally.
"""

from .cli.commands import app

__version__ = "1.0.0"

__all__ = ["app", "__version__"]
