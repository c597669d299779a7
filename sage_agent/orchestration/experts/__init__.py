"""Context experts."""

from sage_agent.orchestration.experts.base import (
    Expert,
    ExpertAttachment,
    ExpertContext,
    ExpertName,
    ExpertPacket,
)
from sage_agent.orchestration.experts.image_gen import ImageGenExpert
from sage_agent.orchestration.experts.memory import MemoryExpert
from sage_agent.orchestration.experts.social_graph import SocialGraphExpert
from sage_agent.orchestration.experts.summarizer import SummarizerExpert
from sage_agent.orchestration.experts.voice_analytics import VoiceAnalyticsExpert

__all__ = [
    "Expert",
    "ExpertAttachment",
    "ExpertContext",
    "ExpertName",
    "ExpertPacket",
    "ImageGenExpert",
    "MemoryExpert",
    "SocialGraphExpert",
    "SummarizerExpert",
    "VoiceAnalyticsExpert",
]
