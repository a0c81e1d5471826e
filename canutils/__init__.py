"""SocketCAN command-line tools and the frame, ISO-TP and gateway helpers behind them."""

__version__ = "0.1.0"