"""
Plain-text rendering of a `PipelineResult` for a downstream text-generation
component. Output depends only on the result, so the same run always gives
the same text.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from .types import Detection, PipelineResult

HEADER = "ON-DEVICE INJURY DETECTION RESULTS"

UNABLE_TO_ANALYZE = "Unable to analyze images with the injury detection model."

NOTHING_DETECTED = (
    "The injury detection model analyzed the provided image(s) but did not detect any injuries "
    "(burns, rashes, abrasions, bruises, cuts, or frostbite)."
)
NOTHING_DETECTED_CAVEAT = (
    "This does not mean no injury exists - it means the model did not identify any with sufficient confidence."
)


def _percent(confidence: float) -> str:
    return f"{confidence * 100:.0f}%"


def format_detection(detection: Detection) -> str:
    return f"{detection.class_name.upper()} ({_percent(detection.confidence)} confidence)"


def format_image_detections(detections: Sequence[Detection], image_index: int, total_images: int) -> str:
    label = f"Image {image_index + 1}" if total_images > 1 else "Uploaded image"
    if not detections:
        return f"{label}: No injuries detected"
    lines = [f"{label}:"]
    lines.extend(f"- {format_detection(d)}" for d in detections)
    return "\n".join(lines)


def format_summary(result: PipelineResult) -> str:
    if result.total_detections == 0:
        return "No injuries were detected in any of the provided images."

    breakdown = ", ".join(f"{count} {name}" for name, count in result.summary.by_class.items())
    highest: Optional[Detection] = result.summary.highest_confidence
    highest_text = f"{highest.class_name.upper()} at {_percent(highest.confidence)}" if highest else "N/A"
    return f"Total: {result.total_detections} injury detection(s) ({breakdown}). Highest confidence: {highest_text}."


def format_detection_context(result: PipelineResult) -> str:
    """
    Three distinct shapes of output:

    * no image could be analyzed -> UNABLE_TO_ANALYZE
    * images analyzed, nothing found -> NOTHING_DETECTED
    * otherwise per-image bullet lists and a SUMMARY line
    """

    lines: List[str] = [HEADER, "=" * len(HEADER), ""]

    if result.successful_images == 0:
        lines.append(UNABLE_TO_ANALYZE)
        return "\n".join(lines)

    if result.total_detections == 0:
        lines.append(NOTHING_DETECTED)
        lines.append(NOTHING_DETECTED_CAVEAT)
        return "\n".join(lines)

    total_images = len(result.results)
    for image_result in result.results:
        if not image_result.success:
            continue
        lines.append(format_image_detections(image_result.detections, image_result.index, total_images))
        lines.append("")

    lines.append("SUMMARY:")
    lines.append(format_summary(result))
    return "\n".join(lines)


def has_analyzable_images(result: Optional[PipelineResult]) -> bool:
    return result is not None and result.successful_images > 0
