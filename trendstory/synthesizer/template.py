from trendstory.storage.models import TrendSignal
from trendstory.utils.tz_utils import ensure_utc
from .base import BaseGenerator, StoryDraft


def _format_score(score: float) -> str:
    if score >= 1_000_000:
        return f"{score / 1_000_000:.1f}M"
    if score >= 1_000:
        return f"{score / 1_000:.0f}K"
    return f"{score:g}"


class TemplateGenerator(BaseGenerator):
    """Gerador determinístico, sem chamadas externas. Default do serviço."""
    name = "template"

    def generate(self, topic: str, score: float, signal: TrendSignal) -> StoryDraft:
        headline = topic.title()
        extra = signal.extra or {}
        lines = [
            f"\"{headline}\" is trending on {signal.source.replace('_', ' ').title()}"
            f" with a score of {_format_score(score)}."
        ]
        if extra.get("news_title"):
            lines.append(f"Top coverage: {extra['news_title']}.")
        if extra.get("approx_traffic"):
            lines.append(f"Approximate search traffic: {extra['approx_traffic']}.")
        if extra.get("comments"):
            lines.append(f"The discussion already has {extra['comments']} comments.")
        lines.append(f"Observed at {ensure_utc(signal.observed_at).strftime('%Y-%m-%d %H:%M')} UTC.")

        metadata = {k: extra[k] for k in ("link", "picture", "geo", "rank") if extra.get(k) is not None}
        return StoryDraft(title=f"Trending: {headline}", body=" ".join(lines), metadata=metadata)
