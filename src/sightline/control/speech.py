"""
Speech Output Channel
=====================

Bounded hand-off of spoken alerts to the speech collaborator.

The core publishes (partial_text, is_final) utterances; the collaborator
decides whether to speak incrementally or only on is_final. Partial text is
cumulative: each utterance carries the whole response so far.

Design Rules:
    - Publishing never blocks (drops oldest on overflow)
    - clear() discards pending output (user interaction started)
"""

import asyncio
import logging
from typing import AsyncIterator, NamedTuple, Optional


logger = logging.getLogger(__name__)


class Utterance(NamedTuple):
    """One (partial_text, is_final) element of the speech stream."""

    text: str
    is_final: bool


class SpeechOutput:
    """
    Non-blocking queue of utterances.

    Example:
        speech = SpeechOutput()
        speech.publish("CLEAR", is_final=True)

        async for text, is_final in speech.stream():
            if is_final:
                tts.speak(text)
    """

    def __init__(self, maxsize: int = 64) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: asyncio.Queue[Utterance] = asyncio.Queue(maxsize=maxsize)
        self._dropped_count: int = 0
        self._published: int = 0

    @property
    def size(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    def publish(self, text: str, is_final: bool) -> None:
        self._published += 1
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self._dropped_count += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(Utterance(text, is_final))
        if is_final:
            logger.info(f"Alert: {text!r}")

    def clear(self) -> int:
        """Discard pending utterances. Returns the number discarded."""
        cleared = 0
        while True:
            try:
                self._queue.get_nowait()
                cleared += 1
            except asyncio.QueueEmpty:
                break
        return cleared

    def get_nowait(self) -> Optional[Utterance]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get(self, timeout: Optional[float] = None) -> Optional[Utterance]:
        """
        Next utterance.

        Args:
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            Next utterance, or None if timeout occurred.
        """
        try:
            if timeout is not None:
                return await asyncio.wait_for(self._queue.get(), timeout=timeout)
            return await self._queue.get()
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list:
        """All pending utterances, oldest first."""
        items = []
        while (item := self.get_nowait()) is not None:
            items.append(item)
        return items

    async def stream(self) -> AsyncIterator[Utterance]:
        while True:
            yield await self._queue.get()
