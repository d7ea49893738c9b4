"""Token estimation and summarization collaborators.

The coordinator treats both as opaque callables:

- ``estimate_tokens(text) -> int``
- ``summarize(text, target_tokens) -> str``

`LangChainSummarizer` calls a chat model; `ExtractiveSummarizer` is a
deterministic fallback for offline use and tests.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from langchain_core.prompts import ChatPromptTemplate

TokenEstimator = Callable[[str], int]
SummarizeFn = Callable[[str, int], str]

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+")

_SYSTEM_PROMPT = """
You compress working context for a language model that will read your summary
instead of the original text.

Rules:
1) Keep decisions, facts, names, numbers, and open questions.
2) Drop greetings, chit-chat, and repeated content.
3) Never add information that is not in the input.
4) Stay under {target_tokens} tokens. Output plain text with no preamble.
""".strip()


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


class ExtractiveSummarizer:
    """Keeps leading sentences until the target token count is reached.

    If the first sentence alone is over target, it is cut at the target
    token count. Output is deterministic for a given input.
    """

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self.estimator = estimator or estimate_token_count

    def __call__(self, text: str, target_tokens: int) -> str:
        sentences = [part.strip() for part in _SENTENCE_SPLIT.split(text) if part.strip()]
        kept: list[str] = []
        for sentence in sentences:
            candidate = " ".join([*kept, sentence])
            if self.estimator(candidate) > target_tokens:
                break
            kept.append(sentence)
        if kept:
            return " ".join(kept)
        if not sentences:
            return ""
        words = sentences[0].split()
        while words and self.estimator(" ".join(words)) > target_tokens:
            words.pop()
        return " ".join(words)


class LangChainSummarizer:
    """Summarizes through a LangChain chat model runnable."""

    def __init__(self, llm: Any) -> None:
        self.llm = llm
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", _SYSTEM_PROMPT),
                ("human", "{text}"),
            ]
        )
        self.chain = self.prompt | llm

    def __call__(self, text: str, target_tokens: int) -> str:
        response = self.chain.invoke({"text": text, "target_tokens": target_tokens})
        return _message_text(response).strip()


def _message_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts)
    return str(content)
