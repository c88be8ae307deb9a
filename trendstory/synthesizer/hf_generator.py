import torch
from transformers import pipeline, AutoTokenizer, AutoModelForSeq2SeqLM

from trendstory.errors import GenerationFailed
from trendstory.storage.models import TrendSignal
from .base import BaseGenerator, StoryDraft


class TransformersGenerator(BaseGenerator):
    """
    Geração de stories com um modelo seq2seq do Hugging Face (default flan-t5-small).
    Faz duas chamadas: uma para a manchete e outra para o corpo.
    Só é importado quando TREND_STORY_GENERATOR=transformers (extra `ml`).
    """
    name = "transformers"

    def __init__(self, model_name: str = "google/flan-t5-small", max_length: int = 160):
        self.device = 0 if torch.cuda.is_available() else -1
        self.tokenizer = AutoTokenizer.from_pretrained(model_name)
        self.model = AutoModelForSeq2SeqLM.from_pretrained(model_name)
        self.max_length = max_length
        self.pipe = pipeline(
            "text2text-generation",
            model=self.model,
            tokenizer=self.tokenizer,
            device=self.device,
        )

    def _run(self, prompt: str, max_length: int) -> str:
        out = self.pipe(prompt, max_length=max_length, do_sample=False, truncation=True)
        if not out:
            raise GenerationFailed("model returned no output")
        return (out[0].get("generated_text") or "").strip()

    def generate(self, topic: str, score: float, signal: TrendSignal) -> StoryDraft:
        context = signal.extra.get("news_title") or ""
        title = self._run(f"Write a short news headline about the trending topic: {topic}. {context}", 32)
        body = self._run(
            f"Write a short news story (3 to 5 sentences) explaining why '{topic}' is trending "
            f"right now. {context}",
            self.max_length,
        )
        if not title or not body:
            raise GenerationFailed("model returned empty text")
        return StoryDraft(title=title, body=body, metadata={"model": self.model.name_or_path})
