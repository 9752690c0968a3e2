"""Turns captured segment frames into validated analysis records.

The analyzer encodes a segment's frames, asks the configured provider for
a JSON analysis, and builds a ScreenshotAnalysis from the reply. Provider
and parse failures are retried; a reply that still cannot be parsed is
returned as an invalid record carrying the raw text, so it can be stored
for audit.
"""

import base64
import io
import logging
from typing import List, Optional, TYPE_CHECKING

from PIL import Image

from .errors import AnalysisParseError, ProviderError
from .models import CATEGORIES, FOCUS_LEVELS, INTERACTION_MODES, ScreenshotAnalysis
from .providers import parse_analysis_response

if TYPE_CHECKING:
    from .providers import VisionProvider

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE = 1024

ANALYSIS_PROMPT = f"""You are looking at frames from a short recording of someone's screen.
Describe what they are doing and reply with a single JSON object with these keys:

- application: name of the main application in use
- window_title: the active window title, if visible
- url: the page URL, if a browser is in use
- activity_category: one of {', '.join(CATEGORIES)}
- productivity_score: integer 1-10
- focus_level: one of {', '.join(FOCUS_LEVELS)}
- interaction_mode: one of {', '.join(INTERACTION_MODES)}
- is_continuation: true if this looks like the same task as the previous segment
- activity_description: a short phrase, e.g. "editing grouper.py"
- activity_summary: 2-3 sentences
- accomplishments: list of concrete things finished, may be empty
- context_tags: 2-5 short lowercase tags
- project_name: project being worked on, or null
- people_mentioned: list of names visible, may be empty
- technologies: list of languages, frameworks or tools visible
- ocr_text: important visible text, abbreviated
- file_names: list of file names visible
- error_indicators: list of error messages visible, may be empty

Reply with the JSON object only.{{previous}}"""


def prepare_image(path: str) -> str:
    """
    Resize an image to at most 1024px on its longest side and return it
    as base64-encoded JPEG.
    """
    with Image.open(path) as img:
        if img.width > MAX_IMAGE_SIZE or img.height > MAX_IMAGE_SIZE:
            ratio = MAX_IMAGE_SIZE / max(img.width, img.height)
            img = img.resize((int(img.width * ratio), int(img.height * ratio)),
                             Image.Resampling.LANCZOS)
        if img.mode != "RGB":
            img = img.convert("RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=85)
        return base64.b64encode(buffer.getvalue()).decode("utf-8")


class SegmentAnalyzer:
    """Produces a ScreenshotAnalysis for one captured segment.

    Attributes:
        provider: VisionProvider used for the model call
        max_retries: Extra attempts after a failed call or unparseable reply
    """

    def __init__(self, provider: "VisionProvider", max_retries: int = 2):
        self.provider = provider
        self.max_retries = max_retries

    def build_prompt(self, previous_summary: Optional[str] = None) -> str:
        previous = ""
        if previous_summary:
            previous = f"\n\nThe previous segment was: {previous_summary}"
        return ANALYSIS_PROMPT.replace("{previous}", previous)

    def analyze(self, segment_id: str, captured_at: int, image_paths: List[str],
                previous_summary: Optional[str] = None) -> ScreenshotAnalysis:
        """Analyze one segment.

        Args:
            segment_id: Identifier of the captured segment
            captured_at: Capture time (unix seconds) of the segment start
            image_paths: Frames extracted from the segment
            previous_summary: Summary of the preceding segment, used as a
                hint for the continuation flag

        Returns:
            ScreenshotAnalysis; invalid if the reply never parsed

        Raises:
            ProviderError: If no frame could be prepared or every call failed
        """
        images = []
        for path in image_paths:
            try:
                images.append(prepare_image(path))
            except OSError as e:
                logger.warning(f"Skipping unreadable frame {path}: {e}")
        if not images:
            raise ProviderError(f"No usable frames for segment {segment_id}")

        prompt = self.build_prompt(previous_summary)
        last_text = None
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                last_text = self.provider.analyze_images(images, prompt)
                payload = parse_analysis_response(last_text)
                return ScreenshotAnalysis.from_payload(
                    payload, segment_id=segment_id, captured_at=captured_at, raw_text=last_text
                )
            except (ProviderError, AnalysisParseError) as e:
                last_error = e
                logger.warning(
                    f"Analysis attempt {attempt + 1}/{self.max_retries + 1} for {segment_id} failed: {e}"
                )

        if last_text is None:
            raise ProviderError(f"Analysis failed for {segment_id}: {last_error}")

        record = ScreenshotAnalysis.from_payload(
            {}, segment_id=segment_id, captured_at=captured_at, raw_text=last_text
        )
        record.validation_error = f"unparseable response: {last_error}"
        return record
