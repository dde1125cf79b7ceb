"""Classification schemes available to the categorization engine."""
import json

from .models import Classification, Incident, TaxonomyType
from .prompts import (
    CATEGORIZE_PROMPT,
    CERT_CATEGORIES,
    CERT_INSTRUCTIONS,
    LLM_INSTRUCTIONS,
    NIST_CATEGORIES,
    NIST_INSTRUCTIONS,
)


class UnknownTaxonomyError(ValueError):
    """Raised for a categorization type outside cert/llm/nist."""

    def __init__(self, value):
        super().__init__(f"Invalid categorization type: {value!r}")
        self.value = value


class Taxonomy:
    """A classification scheme: its prompt and the categories it accepts.

    ``categories`` is ``None`` for open schemes where the model names the
    categories itself.
    """

    type: TaxonomyType
    categories: tuple[str, ...] | None = None

    @property
    def label(self) -> str:
        return self.type.label

    def instructions(self, batch_size: int) -> str:
        raise NotImplementedError

    def build_prompt(self, batch: list[Incident]) -> str:
        """Classification prompt for one batch."""
        batch_ids = [incident.id for incident in batch]
        return CATEGORIZE_PROMPT.format(
            instructions=self.instructions(len(batch)),
            batch_size=len(batch),
            batch_ids=json.dumps(batch_ids),
            incidents=json.dumps([incident.to_wire() for incident in batch], ensure_ascii=False),
        )

    def accepts(self, classification: Classification) -> bool:
        """Whether a classification names a category of this taxonomy."""
        if not classification.category.strip():
            return False
        return self.categories is None or classification.category in self.categories


class CertTaxonomy(Taxonomy):
    type = TaxonomyType.CERT
    categories = ("DoS", "Fraude", "Invasão", "Scan", "Web", "Outros")

    def instructions(self, batch_size: int) -> str:
        return CERT_INSTRUCTIONS.format(batch_size=batch_size, categories=CERT_CATEGORIES)


class LLMTaxonomy(Taxonomy):
    type = TaxonomyType.LLM

    def instructions(self, batch_size: int) -> str:
        return LLM_INSTRUCTIONS.format(batch_size=batch_size)


class NistTaxonomy(Taxonomy):
    type = TaxonomyType.NIST
    categories = ("CAT 0", "CAT 1", "CAT 2", "CAT 3", "CAT 4", "CAT 5", "CAT 6")

    def instructions(self, batch_size: int) -> str:
        return NIST_INSTRUCTIONS.format(batch_size=batch_size, categories=NIST_CATEGORIES)


TAXONOMIES: dict[TaxonomyType, Taxonomy] = {
    TaxonomyType.CERT: CertTaxonomy(),
    TaxonomyType.LLM: LLMTaxonomy(),
    TaxonomyType.NIST: NistTaxonomy(),
}


def get_taxonomy(value: "TaxonomyType | str") -> Taxonomy:
    """Resolve a taxonomy from its enum member or request value (case-insensitive)."""
    if isinstance(value, TaxonomyType):
        return TAXONOMIES[value]
    try:
        return TAXONOMIES[TaxonomyType(str(value).lower())]
    except ValueError:
        raise UnknownTaxonomyError(value) from None
