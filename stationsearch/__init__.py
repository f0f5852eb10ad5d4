"""Guide station ID lookup and push for Dispatcharr, Emby and Channels DVR."""

__version__ = "1.0.0"
