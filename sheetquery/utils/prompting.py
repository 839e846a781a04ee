import json
from string import Template
from typing import Any


def render_prompt(template_str: str, **kwargs: Any) -> str:
    """
    Renders a prompt with string.Template so braces in embedded JSON or
    spreadsheet text never break formatting. Dicts and lists are dumped as JSON.
    """
    str_kwargs = {}
    for key, value in kwargs.items():
        if isinstance(value, (dict, list, tuple)):
            str_kwargs[key] = json.dumps(value, ensure_ascii=False, indent=2, default=str)
        else:
            str_kwargs[key] = str(value)
    return Template(template_str).safe_substitute(**str_kwargs)


def truncate_text(text: str, max_chars: int = 2000) -> str:
    text = str(text or "")
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 15] + "...[TRUNCATED]"
