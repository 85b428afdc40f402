"""Token counting for recall budgets."""

import logging

import tiktoken

logger = logging.getLogger(__name__)


class TokenCounter:
    """Counts tokens with a tiktoken encoding.

    The encoding is loaded on first use, so constructing a counter costs
    nothing when no token budget is ever requested.

    Attributes:
        encoding_name: Tiktoken encoding name (e.g. "cl100k_base").
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoder: tiktoken.Encoding | None = None

    @property
    def encoder(self) -> tiktoken.Encoding:
        if self._encoder is None:
            try:
                self._encoder = tiktoken.get_encoding(self.encoding_name)
            except ValueError:
                logger.warning(
                    f"Unknown encoding {self.encoding_name}, falling back to cl100k_base"
                )
                self._encoder = tiktoken.get_encoding("cl100k_base")
        return self._encoder

    def count(self, text: str) -> int:
        """Number of tokens in ``text``."""
        if not text:
            return 0
        return len(self.encoder.encode(text))

    def __call__(self, text: str) -> int:
        return self.count(text)
