"""Face match step of the vote pipeline.

Probes are validated locally (encoding, format, size) before the remote
comparison runs, since every comparison is billed. The comparison service
answers with the similarity of each face match it found; no match at all is
a rejection regardless of threshold.
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any

import requests

from config import FACE_COMPARE_API_KEY, FACE_COMPARE_URL, FACE_MATCH_THRESHOLD, HTTP_TIMEOUT_SECONDS, MAX_IMAGE_BYTES
from errors import ImageTooLarge, InvalidImage, NoReferenceEnrolled, ServiceTimeout, ServiceUnavailable

logger = logging.getLogger(__name__)

DATA_URI = re.compile(r"^data:image/(?P<fmt>png|jpeg|jpg);base64,", re.IGNORECASE)
SIGNATURES = {
    "png": b"\x89PNG\r\n\x1a\n",
    "jpeg": b"\xff\xd8\xff",
}


def decode_image(data: str, max_bytes: int = MAX_IMAGE_BYTES) -> bytes:
    """Decode a base64 PNG/JPEG, optionally wrapped in a data URI."""
    if not isinstance(data, str) or not data.strip():
        raise InvalidImage("Base64 image data is required")
    data = data.strip()

    declared = None
    match = DATA_URI.match(data)
    if match:
        declared = "jpeg" if match.group("fmt").lower() in ("jpeg", "jpg") else "png"
        data = data[match.end():]
    elif data.startswith("data:"):
        raise InvalidImage()

    # base64 inflates by 4/3; reject oversized payloads before decoding them.
    if len(data) > (max_bytes * 4) // 3 + 4:
        raise ImageTooLarge(max_bytes=max_bytes)
    try:
        image = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImage("Image is not valid base64") from exc
    if len(image) > max_bytes:
        raise ImageTooLarge(max_bytes=max_bytes)

    detected = next((fmt for fmt, magic in SIGNATURES.items() if image.startswith(magic)), None)
    if detected is None:
        raise InvalidImage("Image is not a PNG or JPEG")
    if declared and declared != detected:
        raise InvalidImage(f"Image declared as {declared} but contains {detected}")
    return image


@dataclass
class MatchResult:
    is_match: bool
    similarity: float | None

    def to_dict(self) -> dict[str, Any]:
        return {"is_match": self.is_match, "similarity": self.similarity}


class HttpFaceComparator:
    """Client for the remote face comparison endpoint.

    The endpoint takes two base64 images and answers
    ``{"FaceMatches": [{"Similarity": 92.4}, ...]}``.
    """

    def __init__(self, url: str = FACE_COMPARE_URL, api_key: str = FACE_COMPARE_API_KEY,
                 timeout: float = HTTP_TIMEOUT_SECONDS, session: requests.Session | None = None) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def compare(self, reference: bytes, target: bytes) -> list[float]:
        if not self.url:
            raise ServiceUnavailable("Face comparison service is not configured")
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        payload = {
            "source_image": base64.b64encode(reference).decode("ascii"),
            "target_image": base64.b64encode(target).decode("ascii"),
            "similarity_threshold": 0,
        }
        try:
            resp = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as exc:
            raise ServiceTimeout("Face comparison timed out") from exc
        except (requests.RequestException, ValueError) as exc:
            raise ServiceUnavailable(f"Face comparison failed: {exc}") from exc
        return self._similarities(body)

    @staticmethod
    def _similarities(body: Any) -> list[float]:
        try:
            matches = body.get("FaceMatches") or []
            if not isinstance(matches, list):
                raise TypeError("FaceMatches is not a list")
            similarities = []
            for match in matches:
                value = match["Similarity"]
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise TypeError(f"Similarity {value!r} is not a number")
                similarities.append(float(value))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ServiceUnavailable(f"Malformed face comparison response: {exc}") from exc
        return similarities


class BiometricMatcher:
    def __init__(self, store, comparator, threshold: float = FACE_MATCH_THRESHOLD) -> None:
        self.store = store
        self.comparator = comparator
        self.threshold = threshold

    def enroll(self, voter_id: str, image_data: str) -> None:
        image = decode_image(image_data)
        self.store.put_face_reference(voter_id, image)
        logger.info("Stored face reference for voter %s (%d bytes)", voter_id, len(image))

    def match(self, voter_id: str, image_data: str) -> MatchResult:
        reference = self.store.get_face_reference(voter_id)
        if reference is None:
            raise NoReferenceEnrolled()
        target = decode_image(image_data)

        similarities = self.comparator.compare(reference, target)
        if not similarities:
            logger.info("Face comparison for voter %s found no matching face", voter_id)
            return MatchResult(is_match=False, similarity=None)

        similarity = max(similarities)
        result = MatchResult(is_match=similarity >= self.threshold, similarity=similarity)
        logger.info("Face comparison for voter %s: similarity %.3f match=%s", voter_id, similarity, result.is_match)
        return result
