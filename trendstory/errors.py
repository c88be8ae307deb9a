from typing import Optional


class TrendStoryError(Exception):
    """Base de todos os erros do pipeline de trends/stories."""


class SourceError(TrendStoryError):
    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class SourceUnavailable(SourceError):
    """Provider fora do ar, timeout ou erro de transporte. Nunca há resultado parcial."""


class SourceMalformed(SourceError):
    """Provider respondeu, mas o payload não pôde ser interpretado."""


class GenerationFailed(TrendStoryError):
    def __init__(self, reason: str, key_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.key_id = key_id


class NotFound(TrendStoryError, LookupError):
    def __init__(self, key: str):
        super().__init__(f"story not found: {key}")
        self.key = key


class StoreInvariantViolation(TrendStoryError):
    """Duas entradas para a mesma chave ou id colidindo. Não deveria acontecer nunca."""
