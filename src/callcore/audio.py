"""
Audio conversion utilities for the call pipeline.

- Twilio delivers mu-law 8kHz; the segmenter and STT providers work on
  linear PCM 16-bit 8kHz (mu-law -> PCM is the only inbound conversion).
- TTS providers produce Twilio-ready mu-law 8kHz for the outbound path.
- Silence detection is a mean-absolute-amplitude check over 16-bit samples.
"""

import audioop
import io
import wave
from typing import Generator

import numpy as np

TWILIO_SAMPLE_RATE = 8000
PCM_SAMPLE_WIDTH = 2
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 8kHz
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, PCM_SAMPLE_WIDTH)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, PCM_SAMPLE_WIDTH)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def pcm16_bytes_for_duration(duration_ms: int, sample_rate: int = TWILIO_SAMPLE_RATE) -> int:
    """Number of PCM16 mono bytes covering `duration_ms`."""
    return int(sample_rate * duration_ms / 1000) * PCM_SAMPLE_WIDTH


def mean_abs_amplitude(pcm_bytes: bytes) -> float:
    """
    Mean absolute amplitude of little-endian 16-bit samples.

    A trailing odd byte (half a sample) is ignored.
    """
    usable = len(pcm_bytes) - (len(pcm_bytes) % PCM_SAMPLE_WIDTH)
    if usable <= 0:
        return 0.0
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.int32)
    return float(np.mean(np.abs(samples)))


def is_silent_pcm16(pcm_bytes: bytes, threshold: float) -> bool:
    """True when the chunk's mean absolute amplitude is below `threshold`."""
    return mean_abs_amplitude(pcm_bytes) < threshold


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk mu-law audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + b'\xff' * (chunk_size - len(chunk))  # 0xFF is silence in mu-law
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else PCM_SAMPLE_WIDTH
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        mono = audioop.tomono(frames, 2, 0.5, 0.5)
        return int(sample_rate), mono

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def wav_bytes_to_twilio_ulaw(wav_bytes: bytes) -> bytes:
    """
    Convert a PCM16 WAV byte string into Twilio 8kHz mu-law bytes.

    This is the bridge for TTS providers that return WAV audio.
    """
    sr, pcm = read_wav_mono_pcm16(wav_bytes)
    pcm_8k = resample_pcm16(pcm, sr, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)
