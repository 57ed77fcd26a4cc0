import numpy as np

from face_tracking.overlay import KNOWN_COLOR, UNKNOWN_COLOR, build_overlay, label_text, render_overlay
from face_tracking.types import BoundingBox, RecognitionResult


def test_label_text_for_known_and_unknown():
    known = RecognitionResult(label="alice", confidence=0.734, age=30, gender="female")
    assert label_text(known) == ("alice (73%)", "Age: ~30, female")
    unknown = RecognitionResult(label="unknown", confidence=1.0)
    assert label_text(unknown) == ("Unknown", "Age: ~?, ?")
    assert label_text(None) == ("Unknown", "Age: ~?, ?")


def test_overlay_box_is_padded_and_colored():
    box = BoundingBox(100.0, 100.0, 50.0, 60.0)
    overlay = build_overlay(box, RecognitionResult(label="alice", confidence=0.9), padding=15)
    assert overlay.box == BoundingBox(85.0, 85.0, 80.0, 90.0)
    assert overlay.color == KNOWN_COLOR
    assert overlay.label_origin == (85, 35)

    assert build_overlay(box, None).color == UNKNOWN_COLOR


def test_render_draws_on_frame():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    overlay = build_overlay(BoundingBox(200.0, 200.0, 80.0, 80.0), None)
    render_overlay(frame, overlay)
    assert frame.any()


def test_render_tolerates_label_outside_frame():
    frame = np.zeros((120, 160, 3), dtype=np.uint8)
    overlay = build_overlay(BoundingBox(0.0, 0.0, 40.0, 40.0), None)
    render_overlay(frame, overlay)
    assert frame.shape == (120, 160, 3)
