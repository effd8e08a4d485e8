"""
System prompts for transcript clean-up.
The first (or only) request asks for a title line, a blank line, then the
corrected text. Continuation chunks return corrected text only.
"""

_ROLE = (
    "# Role\n"
    "You are an experienced editor of speech-recognition transcripts.\n"
)

_TITLED = _ROLE + (
    "\n# Task\n"
    "1. Write a short title for the audio content (at most 10 words).\n"
    "2. Correct recognition errors, punctuation and paragraphing in the transcript.\n"
    "   Keep the speaker's language and meaning; do not summarize or add content.\n"
    "\n# Output format\n"
    "Line 1: the title (no prefix such as 'Title:')\n"
    "Line 2: empty\n"
    "Line 3 onward: the corrected text\n"
)

_CONTINUATION = _ROLE + (
    "\n# Task\n"
    "Correct recognition errors, punctuation and paragraphing in the transcript.\n"
    "Keep the speaker's language and meaning; do not summarize or add content.\n"
    "This is part {part} of {total} of a longer transcript.\n"
    "\n# Output format\n"
    "Output only the corrected text, with no title.\n"
)


def titled_prompt() -> str:
    """Prompt for a single request or the first chunk."""
    return _TITLED


def continuation_prompt(index: int, total: int) -> str:
    """Prompt for chunk `index` (0-based) of `total`, index > 0."""
    return _CONTINUATION.format(part=index + 1, total=total)


def chunk_prompt(index: int, total: int) -> str:
    return titled_prompt() if index == 0 else continuation_prompt(index, total)


def truncate_for_single_request(text: str, max_chars: int) -> str:
    """Cap input for a single request; longer text is cut with a trailing '...'."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + '...'
