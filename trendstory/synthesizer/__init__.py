from .base import BaseGenerator, StoryDraft, StorySynthesizer
from .template import TemplateGenerator


def build_generator(settings) -> BaseGenerator:
    if settings.generator == TemplateGenerator.name:
        return TemplateGenerator()
    if settings.generator == "transformers":
        # torch/transformers são pesados: só carrega quando configurado
        from .hf_generator import TransformersGenerator
        return TransformersGenerator(settings.generator_model)
    raise ValueError(f"unknown generator '{settings.generator}'")


__all__ = ["BaseGenerator", "StoryDraft", "StorySynthesizer", "TemplateGenerator", "build_generator"]
