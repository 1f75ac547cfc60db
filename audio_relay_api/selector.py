from typing import Optional, Sequence, Tuple
from .errors import NoAudioFormat
from .models import EncodingDescriptor

def _rank(candidate: EncodingDescriptor) -> Tuple[bool, float]:
    # candidates without a reported bitrate sort below every candidate that has one
    return (candidate.bitrate is not None, candidate.bitrate or 0.0)

def select_audio_format(candidates: Sequence[EncodingDescriptor]) -> EncodingDescriptor:
    """Pick the audio-only candidate with the highest bitrate.

    Ties keep the first candidate in input order. Raises NoAudioFormat when
    no candidate is audio-only.
    """
    best: Optional[EncodingDescriptor] = None
    for candidate in candidates:
        if not candidate.audio_only:
            continue
        if best is None or _rank(candidate) > _rank(best):
            best = candidate
    if best is None:
        raise NoAudioFormat(
            "No audio-only format available",
            f"{len(candidates)} candidate format(s), none audio-only",
        )
    return best
