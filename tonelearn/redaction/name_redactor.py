"""Replace personal names and email addresses with categorical placeholders.

Regex-based, no model calls. Placeholders are lowercase and bracketed
(``[firstname]``, ``[email]``) so a second pass over redacted text finds
nothing new to replace.
"""

import logging
import re

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EMAIL_PLACEHOLDER = "[email]"

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_NAME_WORD = r"[A-Z][a-z]+(?:[-'][A-Z][a-z]+)?"

# "Dr. Smith", "Mrs Jane Doe". Zero-width so "Dr Smith Dr Jones" yields both.
_TITLES = ("Mr", "Mrs", "Ms", "Miss", "Dr", "Prof", "Sir", "Lady", "Lord")
_TITLE_NAME = re.compile(
    rf"\b(?=((?:{'|'.join(_TITLES)})\.?)[ \t]+({_NAME_WORD})(?:[ \t]+({_NAME_WORD}))?\b)"
)

# "Hi Sarah," / "Thanks, Bob Jones" / "Dear Alex". Zero-width like titles.
_GREETING_NAME = re.compile(
    r"\b(?=(?:Hi|Hey|Hello|Dear|Morning|Thanks|Thank you|Cheers|Congrats|Congratulations)"
    rf"[ \t]*,?[ \t]+({_NAME_WORD})(?:[ \t]+({_NAME_WORD}))?\b)"
)

# Valediction on its own line, name on the next non-empty line
_VALEDICTION_LINE = re.compile(
    r"^\s*(?:best|best regards|regards|kind regards|warm regards|thanks|thank you|"
    r"many thanks|cheers|sincerely|love|talk soon|take care|yours|all the best)\s*[,!.]?\s*$",
    re.IGNORECASE,
)
_SIGNATURE_LINE = re.compile(rf"^\s*-?\s*({_NAME_WORD}(?:[ \t]+{_NAME_WORD}){{0,2}})\s*$")

# "-Jen" style sign-off anywhere
_DASH_SIGNOFF = re.compile(rf"(?:^|\s)-[ \t]?({_NAME_WORD})\s*$", re.MULTILINE)

# Capitalized words that follow greetings but are not names
_STOP_WORDS = frozenset(
    {
        "All",
        "Everyone",
        "Everybody",
        "Team",
        "Folks",
        "Guys",
        "There",
        "Again",
        "So",
        "For",
        "Much",
        "You",
        "Both",
        "Sir",
        "Madam",
        "Friends",
        "Family",
        "Mom",
        "Dad",
        "Monday",
        "Tuesday",
        "Wednesday",
        "Thursday",
        "Friday",
        "Saturday",
        "Sunday",
        "Regards",
        "Best",
        "Thanks",
        "Cheers",
        "Sent",
        "The",
        "This",
        "That",
        "And",
        "But",
        "Just",
        "Let",
        "Please",
        "Great",
        "Good",
        "Happy",
        "Hope",
        "Love",
        "Hi",
        "Hey",
        "Hello",
        "Dear",
        "Morning",
        "Thank",
        "Congrats",
        "Congratulations",
        *_TITLES,
    }
)


class RedactionResult(BaseModel):
    """Redacted text plus the entities that were removed."""

    text: str
    names_found: list[str] = Field(default_factory=list)
    emails_found: list[str] = Field(default_factory=list)


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _plain_pattern(parts: int) -> str:
    if parts == 1:
        return "[firstname]"
    if parts == 2:
        return "[firstname] [lastname]"
    return "[fullname]"


def _title_pattern(parts: int) -> str:
    if parts == 2:
        return "[title] [lastname]"
    if parts >= 3:
        return "[title] [firstname] [lastname]"
    return "[title]"


class NameRedactor:
    """Detects names with heuristics plus a caller-supplied custom list."""

    def __init__(self, custom_names: list[str] | None = None) -> None:
        self._custom_names: set[str] = set()
        if custom_names:
            self.add_custom_names(custom_names)

    def add_custom_names(self, names: list[str]) -> None:
        """Always redact these names, case-insensitively."""
        for name in names:
            name = name.strip()
            if name:
                self._custom_names.add(name)

    def clear_custom_names(self) -> None:
        self._custom_names.clear()

    def _detect_names(self, text: str) -> dict[str, str]:
        """Map each detected name to its placeholder pattern."""
        found: dict[str, str] = {}

        def _accept(words: list[str]) -> list[str]:
            # Trim trailing stop words ("Hi Sarah Thanks" -> ["Sarah"])
            kept: list[str] = []
            for word in words:
                if word in _STOP_WORDS:
                    break
                kept.append(word)
            return kept

        for match in _TITLE_NAME.finditer(text):
            title = match.group(1)
            names = _accept([g for g in match.groups()[1:] if g])
            if names:
                found[" ".join([title, *names])] = _title_pattern(len(names) + 1)

        for match in _GREETING_NAME.finditer(text):
            names = _accept([g for g in match.groups() if g])
            if names:
                found.setdefault(" ".join(names), _plain_pattern(len(names)))

        lines = text.splitlines()
        for i, line in enumerate(lines):
            if not _VALEDICTION_LINE.match(line):
                continue
            for following in lines[i + 1 :]:
                if not following.strip():
                    continue
                sig = _SIGNATURE_LINE.match(following)
                if sig:
                    names = _accept(sig.group(1).split())
                    if names:
                        found.setdefault(" ".join(names), _plain_pattern(len(names)))
                break

        for match in _DASH_SIGNOFF.finditer(text):
            names = _accept([match.group(1)])
            if names:
                found.setdefault(names[0], "[firstname]")

        return found

    def redact(self, text: str) -> RedactionResult:
        """Redact names and email addresses.

        Args:
            text: Free text, possibly already redacted.

        Returns:
            RedactionResult with placeholder text and the originals found.
        """
        if not text:
            return RedactionResult(text=text or "")

        emails_found = _EMAIL.findall(text)
        # Emails go first so no name pattern can fire inside an address
        result = _EMAIL.sub(EMAIL_PLACEHOLDER, text)

        names_found: list[str] = []
        # A longer name can swallow the context of a shorter one
        # ("Hi Bob Sarah Jones" once "Sarah Jones" is gone), so detect
        # again until a pass replaces nothing.
        while True:
            replaced, result = self._replace_names(result)
            if not replaced:
                break
            names_found.extend(replaced)

        if names_found or emails_found:
            logger.debug(
                "Redacted %d names and %d emails",
                len(names_found),
                len(emails_found),
            )

        return RedactionResult(
            text=result,
            names_found=_dedupe(names_found),
            emails_found=_dedupe(emails_found),
        )

    def _replace_names(self, text: str) -> tuple[list[str], str]:
        """One detect-and-replace pass. Returns the names replaced and the new text."""
        detected = self._detect_names(text)
        custom = {
            name: _plain_pattern(len(name.split()))
            for name in self._custom_names
            if name not in detected
        }

        replaced: list[str] = []
        replacements = [(name, pattern, False) for name, pattern in detected.items()]
        replacements += [(name, pattern, True) for name, pattern in custom.items()]
        # Longest first so "John Smith" is replaced before "John"
        replacements.sort(key=lambda item: len(item[0]), reverse=True)

        for name, pattern, ignore_case in replacements:
            name_re = re.compile(
                rf"(?<![@\[\w]){re.escape(name)}('s)?(?![\]\w])",
                re.IGNORECASE if ignore_case else 0,
            )
            last_part = pattern.split(" ")[-1]

            def _replace(
                match: re.Match[str], pattern: str = pattern, last: str = last_part
            ) -> str:
                if match.group(1):
                    return f"{last}'s"
                return pattern

            text, count = name_re.subn(_replace, text)
            if count:
                replaced.append(name)

        return replaced, text
