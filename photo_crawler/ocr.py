from __future__ import annotations

from .errors import ClassificationError, ImageDecodeError
from .models import TextObservation


def _load_cg_image(image_bytes: bytes):
    from Cocoa import NSData
    from Quartz import CGImageSourceCreateImageAtIndex, CGImageSourceCreateWithData

    data = NSData.dataWithBytes_length_(image_bytes, len(image_bytes))
    src = CGImageSourceCreateWithData(data, None)
    if src is None:
        raise ImageDecodeError("Could not create image source from data")
    cg_image = CGImageSourceCreateImageAtIndex(src, 0, None)
    if cg_image is None:
        raise ImageDecodeError("Could not create image from data")
    return cg_image


def recognize_text(image_bytes: bytes) -> tuple[list[TextObservation], int, int]:
    """Run Vision text recognition. Returns observations plus the decoded image size."""
    if not image_bytes:
        raise ImageDecodeError("Empty image data")
    try:
        import Vision
        from Quartz import CGImageGetHeight, CGImageGetWidth
    except ImportError as exc:
        raise ClassificationError(
            "On-device OCR needs macOS Vision. Install with: pip install pyobjc-framework-Vision"
        ) from exc

    cg_image = _load_cg_image(image_bytes)
    width = int(CGImageGetWidth(cg_image))
    height = int(CGImageGetHeight(cg_image))

    request = Vision.VNRecognizeTextRequest.alloc().init()
    request.setRecognitionLevel_(Vision.VNRequestTextRecognitionLevelAccurate)
    request.setUsesLanguageCorrection_(True)

    handler = Vision.VNImageRequestHandler.alloc().initWithCGImage_options_(cg_image, None)
    result = handler.performRequests_error_([request], None)
    if isinstance(result, tuple):
        ok, err = result
    else:
        ok, err = bool(result), None
    if not ok:
        raise ClassificationError(f"Vision OCR failed: {err}")

    observations: list[TextObservation] = []
    for obs in request.results() or []:
        candidates = obs.topCandidates_(1)
        if not candidates:
            continue
        cand = candidates[0]
        text = str(cand.string() or "")

        bbox = obs.boundingBox()
        observations.append(
            TextObservation(
                text=text,
                x=float(bbox.origin.x),
                y=float(bbox.origin.y),
                width=float(bbox.size.width),
                height=float(bbox.size.height),
                confidence=float(cand.confidence()),
            )
        )
    return observations, width, height
