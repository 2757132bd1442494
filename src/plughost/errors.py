"""Base error type shared by every plughost module"""


class PlugHostError(Exception):
    """Base error for the plugin host"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
