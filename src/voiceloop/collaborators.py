"""Read-only contracts for records owned by the surrounding application.

Brand voices and rewrites are created and edited elsewhere; the feedback
loop only looks them up. Implementations return ``None`` for unknown ids;
ownership checks happen in the pipeline.
"""

from __future__ import annotations

from typing import Protocol

from .models import BrandVoice, Rewrite


class VoiceDirectory(Protocol):
    def get_voice(self, voice_id: int) -> BrandVoice | None: ...


class RewriteDirectory(Protocol):
    def get_rewrite(self, rewrite_id: int) -> Rewrite | None: ...
