__version__ = "2.0.0"

USER_AGENT = f"video-processor/{__version__}"
