"""
Siren synthesis for help-request alerts.

Each tone is rendered through the same chain a browser audio graph would use:
square oscillator, exponential gain decay, then a hard-knee dynamics
compressor with make-up gain so the siren sits at full scale regardless of the
requested volume.
"""

import io
import math
import sys
import wave
from array import array
from dataclasses import dataclass

SAMPLE_RATE = 44_100
SIREN_FREQUENCIES = (1400, 800, 1400, 800, 1400, 800, 1400, 800)
TONE_SECONDS = 0.150
GAP_SECONDS = 0.030
ENVELOPE_FLOOR = 0.01


@dataclass(frozen=True)
class Compressor:
    threshold_db: float = -10.0
    ratio: float = 12.0

    @property
    def makeup_gain(self) -> float:
        # restore a 0 dBFS input to 0 dBFS after compression
        compressed_peak_db = self.threshold_db - self.threshold_db / self.ratio
        return 10 ** (-compressed_peak_db / 20)

    def gain_for(self, sample: float) -> float:
        level = abs(sample)
        if level == 0:
            return 1.0
        level_db = 20 * math.log10(level)
        if level_db <= self.threshold_db:
            return 1.0
        out_db = self.threshold_db + (level_db - self.threshold_db) / self.ratio
        return 10 ** ((out_db - level_db) / 20)

    def process(self, samples: list[float]) -> list[float]:
        makeup = self.makeup_gain
        out = []
        for s in samples:
            v = s * self.gain_for(s) * makeup
            out.append(max(-1.0, min(1.0, v)))
        return out


def square_wave(
    frequency: float, seconds: float, sample_rate: int = SAMPLE_RATE
) -> list[float]:
    n = round(seconds * sample_rate)
    return [
        1.0 if (frequency * i / sample_rate) % 1.0 < 0.5 else -1.0
        for i in range(n)
    ]


def exponential_envelope(
    samples: list[float], volume: float, sample_rate: int = SAMPLE_RATE
) -> list[float]:
    if not samples:
        return []
    volume = max(volume, ENVELOPE_FLOOR)
    n = len(samples)
    decay = ENVELOPE_FLOOR / volume
    return [s * volume * decay ** (i / n) for i, s in enumerate(samples)]


def render_tone(
    frequency: float,
    volume: float,
    *,
    seconds: float = TONE_SECONDS,
    compressor: Compressor | None = None,
    sample_rate: int = SAMPLE_RATE,
) -> list[float]:
    compressor = compressor or Compressor()
    raw = square_wave(frequency, seconds, sample_rate)
    return compressor.process(exponential_envelope(raw, volume, sample_rate))


def render_alert(
    volume: float = 1.0,
    frequencies: tuple[int, ...] = SIREN_FREQUENCIES,
    sample_rate: int = SAMPLE_RATE,
) -> list[float]:
    compressor = Compressor()
    gap = [0.0] * round(GAP_SECONDS * sample_rate)
    samples: list[float] = []
    for i, freq in enumerate(frequencies):
        if i:
            samples.extend(gap)
        samples.extend(
            render_tone(freq, volume, compressor=compressor, sample_rate=sample_rate)
        )
    return samples


def to_pcm16(samples: list[float]) -> bytes:
    pcm = array("h", (int(s * 32767) for s in samples))
    if sys.byteorder == "big":
        pcm.byteswap()
    return pcm.tobytes()


def to_wav(samples: list[float], sample_rate: int = SAMPLE_RATE) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(sample_rate)
        w.writeframes(to_pcm16(samples))
    return buf.getvalue()


def alert_wav(volume: float = 1.0) -> bytes:
    return to_wav(render_alert(volume))
