from typing import Optional, Tuple

import cv2
import numpy as np

from .config import OVERLAY_PADDING, UNKNOWN_LABEL
from .types import BoundingBox, OverlayInstructions, RecognitionResult

KNOWN_COLOR = (0, 255, 0)
UNKNOWN_COLOR = (0, 0, 255)
TEXT_COLOR = (255, 255, 255)
FONT = cv2.FONT_HERSHEY_SIMPLEX
FONT_SCALE = 0.55
FONT_THICKNESS = 2
TEXT_PADDING = 8
LABEL_HEIGHT = 45
LABEL_GAP = 5
LABEL_ALPHA = 0.85


def label_text(result: Optional[RecognitionResult]) -> Tuple[str, str]:
    if result is None:
        return "Unknown", "Age: ~?, ?"

    if result.label != UNKNOWN_LABEL:
        main = f"{result.label} ({int(round(result.confidence * 100))}%)"
    else:
        main = "Unknown"
    age = "?" if result.age is None else result.age
    gender = result.gender or "?"
    return main, f"Age: ~{age}, {gender}"


def build_overlay(
    box: BoundingBox,
    result: Optional[RecognitionResult],
    padding: int = OVERLAY_PADDING,
) -> OverlayInstructions:
    known = result is not None and result.label != UNKNOWN_LABEL
    main_label, sub_label = label_text(result)

    (main_w, _), _ = cv2.getTextSize(main_label, FONT, FONT_SCALE, FONT_THICKNESS)
    (sub_w, _), _ = cv2.getTextSize(sub_label, FONT, FONT_SCALE, FONT_THICKNESS)
    label_width = max(main_w, sub_w) + TEXT_PADDING * 2

    padded = box.expanded(padding)
    origin = (int(padded.x), int(padded.y - LABEL_HEIGHT - LABEL_GAP))
    return OverlayInstructions(
        box=padded,
        color=KNOWN_COLOR if known else UNKNOWN_COLOR,
        main_label=main_label,
        sub_label=sub_label,
        label_origin=origin,
        label_size=(int(label_width), LABEL_HEIGHT),
    )


def render_overlay(frame: np.ndarray, overlay: OverlayInstructions) -> np.ndarray:
    box = overlay.box
    x1, y1 = int(box.x), int(box.y)
    x2, y2 = int(box.right), int(box.bottom)
    cv2.rectangle(frame, (x1 + 2, y1 + 2), (x2 + 2, y2 + 2), (0, 0, 0), 3, cv2.LINE_AA)
    cv2.rectangle(frame, (x1, y1), (x2, y2), overlay.color, 3, cv2.LINE_AA)

    lx, ly = overlay.label_origin
    lw, lh = overlay.label_size
    h, w = frame.shape[:2]
    bx1, by1 = max(0, lx), max(0, ly)
    bx2, by2 = min(w, lx + lw), min(h, ly + lh)
    if bx2 > bx1 and by2 > by1:
        roi = frame[by1:by2, bx1:bx2]
        fill = np.empty_like(roi)
        fill[:] = overlay.color
        frame[by1:by2, bx1:bx2] = cv2.addWeighted(fill, LABEL_ALPHA, roi, 1.0 - LABEL_ALPHA, 0)

    cv2.putText(
        frame,
        overlay.main_label,
        (lx + TEXT_PADDING, ly + 20),
        FONT,
        FONT_SCALE,
        TEXT_COLOR,
        FONT_THICKNESS,
        cv2.LINE_AA,
    )
    cv2.putText(
        frame,
        overlay.sub_label,
        (lx + TEXT_PADDING, ly + 40),
        FONT,
        FONT_SCALE,
        TEXT_COLOR,
        FONT_THICKNESS,
        cv2.LINE_AA,
    )
    return frame
