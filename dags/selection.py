"""
Selection protocol for the restore workflow.

Every choice the operator makes (which record, which snapshot) goes through a
Selector, so the same workflow runs from the interactive CLI, from a DAG run
configuration, or from tests with fixed answers.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, TypeVar, Union

T = TypeVar('T')

Answer = Union[int, str]


class SelectionError(ValueError):
    """The answer does not identify exactly one candidate"""


class Selector(ABC):
    @abstractmethod
    def choose(self, prompt: str, candidates: Sequence[T], describe: Callable[[T], str] = str) -> T:
        pass


def resolve_answer(answer: Answer, candidates: Sequence[T], describe: Callable[[T], str] = str) -> T:
    """Match an answer against candidates.

    Ints are 0-based indexes. Strings may be "#3" or "3" (1-based, as shown to
    operators) or an exact candidate label.
    """
    if not candidates:
        raise SelectionError('Nothing to choose from')

    if isinstance(answer, bool):
        raise SelectionError(f'Invalid selection: {answer!r}')

    if isinstance(answer, int):
        if 0 <= answer < len(candidates):
            return candidates[answer]
        raise SelectionError(f'Selection {answer} out of range 0..{len(candidates) - 1}')

    text = str(answer).strip()
    labels = [describe(candidate) for candidate in candidates]
    matches = [candidate for candidate, label in zip(candidates, labels) if label == text]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise SelectionError(f'Ambiguous selection {text!r}: {len(matches)} candidates match')

    number = text[1:] if text.startswith('#') else text
    if number.isdigit():
        position = int(number)
        if 1 <= position <= len(candidates):
            return candidates[position - 1]
        raise SelectionError(f'Selection #{position} out of range 1..{len(candidates)}')

    raise SelectionError(f'No candidate matches {text!r}. Available: {labels}')


class FixedSelector(Selector):
    """Answers from configuration, CLI flags or tests"""

    def __init__(self, answer: Answer):
        self.answer = answer

    def choose(self, prompt: str, candidates: Sequence[T], describe: Callable[[T], str] = str) -> T:
        return resolve_answer(self.answer, candidates, describe)


class LatestSelector(Selector):
    """Picks the first candidate; candidates are listed newest first"""

    def choose(self, prompt: str, candidates: Sequence[T], describe: Callable[[T], str] = str) -> T:
        if not candidates:
            raise SelectionError('Nothing to choose from')
        return candidates[0]


class PromptSelector(Selector):
    """Numbered menu on the terminal, asks until the answer is valid"""

    def __init__(self, input_func: Callable[[str], str] = input, output: Callable[[str], None] = print,
                 max_attempts: Optional[int] = None):
        self.input_func = input_func
        self.output = output
        self.max_attempts = max_attempts

    def choose(self, prompt: str, candidates: Sequence[T], describe: Callable[[T], str] = str) -> T:
        if not candidates:
            raise SelectionError('Nothing to choose from')

        self.output(prompt)
        for position, candidate in enumerate(candidates, 1):
            self.output(f'  [{position}] {describe(candidate)}')

        attempts = 0
        while True:
            attempts += 1
            answer = self.input_func('Select number: ')
            try:
                return resolve_answer(answer, candidates, describe)
            except SelectionError as e:
                if self.max_attempts is not None and attempts >= self.max_attempts:
                    raise
                self.output(f'✗ {e}')
