"""Token counting with tiktoken and a CJK-aware fallback."""

from __future__ import annotations

import tiktoken
from loguru import logger


class TokenCounter:
    """Counts tokens for message logs, context checks and RAG budgets.

    Uses the tiktoken encoding for ``model``. When the encoding cannot be
    loaded (unknown model, no BPE files offline) it falls back to a
    character-based estimate tuned for English and Korean text.
    """

    def __init__(self, model: str = "gpt-4o"):
        self._model = model
        self._encoder = None
        try:
            self._encoder = tiktoken.encoding_for_model(model)
        except Exception as e:
            logger.debug(
                f"tiktoken encoding unavailable for {model} ({e}), "
                "using character-based estimation"
            )

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        if not text:
            return 0
        if self._encoder:
            return len(self._encoder.encode(text))
        return self.estimate(text)

    def count_messages(self, messages: list[dict]) -> int:
        """Count tokens in role/content chat messages, with per-message overhead."""
        total = 0
        for msg in messages:
            total += 4
            total += self.count(msg.get("content", ""))
        return total + 2

    @staticmethod
    def estimate(text: str) -> int:
        """Estimate tokens using character-based heuristics.

        English: ~4 characters per token
        CJK (Korean, Japanese, Chinese): ~2 characters per token
        """
        if not text:
            return 0
        cjk_count = sum(
            1
            for c in text
            if "\u4e00" <= c <= "\u9fff"  # CJK Unified
            or "\uac00" <= c <= "\ud7af"  # Korean Hangul
            or "\u3040" <= c <= "\u309f"  # Hiragana
            or "\u30a0" <= c <= "\u30ff"  # Katakana
        )
        non_cjk = len(text) - cjk_count
        return max(1, (non_cjk // 4) + (cjk_count // 2))
