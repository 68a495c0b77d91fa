from __future__ import annotations

import re
from functools import cached_property

from .config import Config


class VocabularyProcessor:
    """Replaces known misrecognitions with their correct spelling.

    Keys are applied one after the other on the whole text, longest first and alphabetically for
    equal lengths, so the result only depends on the vocabulary content.
    """

    def __init__(self, vocabulary: Config.Vocabulary):
        self.vocabulary = vocabulary

    def update_config(self, vocabulary: Config.Vocabulary) -> None:
        self.vocabulary = vocabulary
        self.__dict__.pop("_patterns", None)

    @property
    def is_active(self) -> bool:
        return self.vocabulary.enabled and self.vocabulary.enable_post_asr_replacement

    @cached_property
    def _patterns(self) -> list[tuple[re.Pattern, str]]:
        replacements = self.vocabulary.replacement_dictionary
        keys = sorted(replacements, key=lambda key: (-len(key), key))
        return [(re.compile(re.escape(key), re.IGNORECASE), replacements[key]) for key in keys]

    def process(self, text: str) -> str:
        if not text or not self.is_active:
            return text
        for pattern, correct_word in self._patterns:
            text = pattern.sub(lambda _match, word=correct_word: word, text)
        return text
