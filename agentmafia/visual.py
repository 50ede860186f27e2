"""
Visual Task Routing
===================

Jobs that come with screenshots are first shown to a vision-capable,
analysis-only model (Kimi by default). Its findings are folded into the task
text, so the crew works from a written description of what is wrong on
screen instead of every agent re-reading the images.

Routing happens only when images are attached and the analyst provider has
credentials. A failed analysis never blocks the job; the original task is
used unchanged.

Usage:
    route = await route_visual_task(task, images, registry, "kimi-2.5-latest")
    task = route.task
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from agentmafia.errors import AgentMafiaError
from agentmafia.prompts import load_prompt
from agentmafia.providers.base import ImageInput
from agentmafia.providers.router import ProviderRegistry, detect_provider_from_model

logger = logging.getLogger(__name__)

ANALYST_MAX_TOKENS = 4096

VISUAL_KEYWORDS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bscreenshot\b",
        r"\bstyling\b",
        r"\bcss\b",
        r"\bui\b",
        r"\bux\b",
        r"\bdesign\b",
        r"\blayout\b",
        r"\bvisual\b",
        r"\bfrontend\b",
        r"\blooks?\s+(?:like|wrong|broken|off|weird)",
        r"\bappearance\b",
        r"\bcolou?r\b",
        r"\bfont\b",
        r"\bspacing\b",
        r"\bmargin\b",
        r"\bpadding\b",
        r"\bborder\b",
        r"\bresponsive\b",
        r"\bmobile\b",
        r"\banimation\b",
        r"\btransition\b",
        r"\btheme\b",
        r"\bdark\s*mode\b",
        r"\blight\s*mode\b",
        r"\bicon\b",
        r"\bimage\b",
        r"\bpixel\b",
        r"\balign(?:ment)?\b",
        r"\bbutton\b.*\b(?:style|look|colou?r)",
        r"\bcomponent\b.*\b(?:look|style)",
    )
]

# Enough on their own to call a task visual
STRONG_KEYWORDS = frozenset({"css", "styling", "layout", "frontend", "responsive", "padding", "margin", "spacing"})

IMAGE_REFERENCE = re.compile(r"\.(?:png|jpe?g|gif|webp|svg)\b|\bimage-\d+|screenshot", re.IGNORECASE)


@dataclass
class VisualDetection:
    """Whether a task looks visual, and how sure we are."""
    is_visual: bool
    has_images: bool
    confidence: str  # high, medium, low
    reason: str
    matched_keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "isVisual": self.is_visual,
            "hasImages": self.has_images,
            "confidence": self.confidence,
            "reason": self.reason,
            "matchedKeywords": self.matched_keywords,
        }


@dataclass
class VisualRoute:
    """Result of routing a task through the visual analyst."""
    task: str
    detection: VisualDetection
    analysis: Optional[str] = None
    model: Optional[str] = None
    error: Optional[str] = None

    @property
    def analyzed(self) -> bool:
        return self.analysis is not None


def detect_visual_task(task: str, has_images: bool = False) -> VisualDetection:
    """Score ``task`` for visual intent from its wording and attachments."""
    matched = []
    for pattern in VISUAL_KEYWORDS:
        match = pattern.search(task)
        if match:
            matched.append(match.group(0))
    has_images = has_images or bool(IMAGE_REFERENCE.search(task))
    count = len(matched)
    sample = ", ".join(matched[:3])

    if has_images and count:
        return VisualDetection(True, True, "high", f"Images with visual keywords: {sample}", matched)
    if has_images:
        return VisualDetection(True, True, "medium", "Images attached", matched)
    if count >= 2:
        return VisualDetection(True, False, "medium", f"Multiple visual keywords: {sample}", matched)
    if count and matched[0].lower() in STRONG_KEYWORDS:
        return VisualDetection(True, False, "low", f"Strong visual keyword: {matched[0]}", matched)
    if count:
        return VisualDetection(False, False, "low", f"Single weak visual keyword: {matched[0]}", matched)
    return VisualDetection(False, False, "low", "No visual indicators", matched)


def enhance_task(task: str, analysis: str, images: Sequence[ImageInput]) -> str:
    """Fold the analyst's findings into the task the crew receives."""
    listing = "\n".join(f"{i}. {image.media_type}" for i, image in enumerate(images, 1))
    return (
        f"## Original Task\n{task}\n\n"
        f"## Visual Analysis\n{analysis.strip()}\n\n"
        f"## Reference Images\nThe analysis covers these attachments:\n{listing}\n\n"
        "## Your Job\n"
        "Use the visual analysis above to make the required changes in the actual code. "
        "It lists the properties, measurements and issues to fix."
    )


async def analyze_images(
    task: str,
    images: Sequence[ImageInput],
    providers: ProviderRegistry,
    model: str,
) -> str:
    """
    Ask the analyst model to describe what the images show about ``task``.

    Raises:
        ProviderError: when the analyst call fails.
    """
    provider = providers.get(detect_provider_from_model(model), model)
    content = [{"type": "text", "text": task}]
    content.extend(image.to_block() for image in images)
    response = await provider.complete(
        model=model,
        system=load_prompt("visual_analyst"),
        messages=[{"role": "user", "content": content}],
        max_tokens=ANALYST_MAX_TOKENS,
    )
    return response.text


async def route_visual_task(
    task: str,
    images: Sequence[ImageInput],
    providers: ProviderRegistry,
    model: Optional[str],
) -> VisualRoute:
    """Return the task to run, enhanced with visual analysis when it applies."""
    detection = detect_visual_task(task, bool(images))
    route = VisualRoute(task=task, detection=detection)
    if not detection.is_visual or not images or not model:
        return route

    provider = providers.get(detect_provider_from_model(model), model)
    if not provider.is_configured():
        logger.info("Visual task detected but %s is not configured; skipping analysis", provider.provider_id)
        return route

    logger.info(
        "Sending %d image(s) to %s for analysis (%s confidence: %s)",
        len(images), model, detection.confidence, detection.reason,
    )
    try:
        analysis = await analyze_images(task, images, providers, model)
    except AgentMafiaError as e:
        logger.warning("Visual analysis with %s failed, using the task as given: %s", model, e)
        route.error = str(e)
        return route

    if not analysis.strip():
        route.error = "Analyst returned no findings"
        return route
    route.analysis = analysis
    route.model = model
    route.task = enhance_task(task, analysis, images)
    return route
