"""Urgent alert tone: a declarative beep pattern and a cancellable player.

The pattern is data (:data:`ALERT_PATTERN`); :class:`AlertSoundPlayer`
schedules it on the event loop and hands each tone to an output
callable, and :func:`render_pcm` turns it into 16-bit samples for
outputs that need real audio.
"""

import asyncio
import logging
import math
from array import array
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PEAK_GAIN_FACTOR = 0.3
ENVELOPE_FLOOR = 0.01
AUTO_STOP_SECONDS = 4.0
DEFAULT_SAMPLE_RATE = 8000


@dataclass(frozen=True)
class Tone:
    """A sine beep: frequency in Hz, start offset and duration in seconds."""

    frequency: float
    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass(frozen=True)
class TonePattern:
    """A group of tones repeated at a fixed interval."""

    tones: tuple[Tone, ...]
    repeats: int = 1
    interval: float = 0.0

    def schedule(self) -> list[Tone]:
        """Every tone of every repetition, with absolute offsets, in start order."""
        scheduled = [
            Tone(t.frequency, t.start + r * self.interval, t.duration)
            for r in range(self.repeats)
            for t in self.tones
        ]
        return sorted(scheduled, key=lambda t: t.start)

    @property
    def duration(self) -> float:
        return max((t.end for t in self.schedule()), default=0.0)


# Three beeps (two short A5, one longer C#6), three times
ALERT_PATTERN = TonePattern(
    tones=(
        Tone(880, 0.0, 0.15),
        Tone(880, 0.2, 0.15),
        Tone(1100, 0.4, 0.3),
    ),
    repeats=3,
    interval=1.2,
)


def peak_gain(volume: float) -> float:
    """Gain at the start of each beep for a 0..1 user volume."""
    return max(0.0, min(1.0, volume)) * PEAK_GAIN_FACTOR


def envelope(t: float, duration: float, peak: float) -> float:
    """Exponential decay from ``peak`` at 0 to the floor at ``duration``."""
    if peak <= ENVELOPE_FLOOR:
        return peak
    return peak * (ENVELOPE_FLOOR / peak) ** (t / duration)


def render_pcm(
    pattern: TonePattern = ALERT_PATTERN,
    volume: float = 0.5,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    max_duration: float = AUTO_STOP_SECONDS,
) -> array:
    """Mix a pattern into signed 16-bit mono samples.

    Overlapping tones are summed and clipped. Output stops at
    ``max_duration`` even if the pattern runs longer.
    """
    length = min(pattern.duration, max_duration)
    samples = [0.0] * int(round(length * sample_rate))
    peak = peak_gain(volume)

    for tone in pattern.schedule():
        first = int(round(tone.start * sample_rate))
        last = min(int(round(tone.end * sample_rate)), len(samples))
        for i in range(first, last):
            t = i / sample_rate - tone.start
            samples[i] += envelope(t, tone.duration, peak) * math.sin(
                2 * math.pi * tone.frequency * t
            )

    return array("h", (int(max(-1.0, min(1.0, s)) * 32767) for s in samples))


ToneOutput = Callable[[Tone, float], None]


def _log_tone(tone: Tone, gain: float) -> None:
    logger.debug("Beep %.0f Hz for %.2fs at gain %.3f", tone.frequency, tone.duration, gain)


class AlertSoundPlayer:
    """Plays a tone pattern on the running event loop.

    ``play()`` while a pattern is already playing does nothing; playback
    stops by itself after ``auto_stop`` seconds or when ``stop()`` is
    called.
    """

    def __init__(
        self,
        output: ToneOutput | None = None,
        *,
        pattern: TonePattern = ALERT_PATTERN,
        auto_stop: float = AUTO_STOP_SECONDS,
    ) -> None:
        self.output = output or _log_tone
        self.pattern = pattern
        self.auto_stop = auto_stop
        self._task: asyncio.Task | None = None

    @property
    def is_playing(self) -> bool:
        return self._task is not None and not self._task.done()

    def play(self, volume: float) -> bool:
        """Start the pattern at ``volume`` (0..1).

        Returns:
            True if playback started, False if it was already playing
        """
        if self.is_playing:
            return False
        self._task = asyncio.create_task(self._run(peak_gain(volume)))
        return True

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, gain: float) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            for tone in self.pattern.schedule():
                if tone.start >= self.auto_stop:
                    break
                delay = tone.start - (loop.time() - started)
                if delay > 0:
                    await asyncio.sleep(delay)
                try:
                    self.output(tone, gain)
                except Exception:
                    logger.warning("Alert tone output failed", exc_info=True)
                    return
            remaining = self.auto_stop - (loop.time() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)
        except asyncio.CancelledError:
            logger.debug("Alert sound stopped")
            raise
