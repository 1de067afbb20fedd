from __future__ import annotations

import numpy as np
import pytest
from conftest import FakeEncoder

from session_capture.config import DEFAULT_ENCODING_CANDIDATES
from session_capture.encoding import AvChunkEncoder, select_profile
from session_capture.errors import EncoderUnsupported


def test_frames_before_start_are_rejected() -> None:
    encoder = AvChunkEncoder(frame_rate=10)
    with pytest.raises(RuntimeError, match="not been started"):
        encoder._encode(np.zeros((16, 16, 3), dtype=np.uint8))


def test_malformed_frames_are_rejected() -> None:
    encoder = AvChunkEncoder(frame_rate=10)
    with pytest.raises(ValueError):
        encoder._encode(np.zeros(16, dtype=np.uint8))


def test_select_profile_reports_every_attempted_candidate() -> None:
    with pytest.raises(EncoderUnsupported) as excinfo:
        select_profile(FakeEncoder(supported=()), DEFAULT_ENCODING_CANDIDATES)
    for candidate in DEFAULT_ENCODING_CANDIDATES:
        assert candidate.mime_type in str(excinfo.value)
