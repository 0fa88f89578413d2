import logging
import re
from collections import Counter
from functools import lru_cache
from typing import Protocol

from searchengine.services.extractor import page_text

logger = logging.getLogger(__name__)

# pymorphy3 tags for conjunctions, prepositions, particles and interjections
FUNCTION_WORD_TAGS = {"CONJ", "PREP", "PRCL", "INTJ"}


class Normalizer(Protocol):
    # Regex character-class body of the letters this normalizer understands
    alphabet: str

    def lemma_for(self, word: str) -> str | None: ...


class RussianNormalizer:
    alphabet = "а-яё"

    def __init__(self):
        import pymorphy3

        logger.info("Loading Russian morphology dictionaries")
        self._morph = pymorphy3.MorphAnalyzer(lang="ru")

    def lemma_for(self, word: str) -> str | None:
        parses = self._morph.parse(word)
        if not parses:
            return None
        if any(p.tag.POS in FUNCTION_WORD_TAGS for p in parses):
            return None
        return parses[0].normal_form or None


class LemmaFinder:
    def __init__(self, normalizer: Normalizer):
        self.normalizer = normalizer
        self._non_letters = re.compile(f"[^{normalizer.alphabet}\\s]")
        self._word = re.compile(f"[{normalizer.alphabet}]+")
        self._lemma_for = lru_cache(maxsize=100_000)(normalizer.lemma_for)

    def collect_lemmas(self, html: str) -> dict[str, int]:
        """Lemma -> occurrence count for the text of an HTML document."""
        return self.collect_lemmas_from_text(page_text(html))

    def collect_lemmas_from_text(self, text: str) -> dict[str, int]:
        words = self._non_letters.sub(" ", (text or "").lower()).split()
        counts: Counter[str] = Counter()
        for word in words:
            lemma = self._lemma_for(word)
            if lemma:
                counts[lemma] += 1
        return dict(counts)

    def get_lemma_for_word(self, word: str) -> str | None:
        word = (word or "").lower()
        if not self._word.fullmatch(word):
            return None
        return self._lemma_for(word)


@lru_cache(maxsize=None)
def get_lemma_finder() -> LemmaFinder:
    return LemmaFinder(RussianNormalizer())
