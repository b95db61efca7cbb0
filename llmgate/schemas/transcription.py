from pydantic import BaseModel


class TranscriptionWord(BaseModel):
    word: str
    start: float
    end: float


class TranscriptionSegment(BaseModel):
    id: int | None = None
    start: float
    end: float
    text: str

    model_config = {"extra": "allow"}


class TranscriptionResponse(BaseModel):
    """``verbose_json`` transcription body; plain ``json`` only carries ``text``."""

    text: str
    language: str | None = None
    duration: float | None = None
    words: list[TranscriptionWord] | None = None
    segments: list[TranscriptionSegment] | None = None

    model_config = {"extra": "allow"}
