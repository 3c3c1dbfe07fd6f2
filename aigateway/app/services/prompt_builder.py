from __future__ import annotations

import base64

_FRAMEWORK_RULES = {
    "tailwind": (
        "Style every element with Tailwind CSS utility classes. "
        "Do not write <style> blocks or inline style attributes."
    ),
    "bootstrap": (
        "Use Bootstrap 5 classes and grid for layout and components. "
        "Avoid custom CSS unless Bootstrap has no equivalent."
    ),
    "none": (
        "Use semantic HTML with a single <style> block of plain CSS. "
        "Do not reference any CSS framework."
    ),
}

_BASE_RULES = (
    "You are a web page builder that writes production-ready HTML. "
    "Respond with HTML only: no markdown fences, no explanations. "
    "Never include <script> tags."
)

_PAGE_RULES = "Return the complete markup for the page body, starting with its outermost section."

_ELEMENT_RULES = (
    "You are editing an existing element. Keep its structure, content and classes unless the "
    "request asks to change them, and return only the updated element's outer HTML."
)

_SCREENSHOT_RULES = (
    "Recreate the screenshot as faithfully as possible: layout, spacing, colors, text and images. "
    "Use placeholder image URLs from https://placehold.co where the screenshot shows images."
)

TRUNCATION_MARKER = "<!-- existing markup truncated -->"


def system_instruction(framework: str, mode: str) -> str:
    rules = [_BASE_RULES, _FRAMEWORK_RULES.get(framework, _FRAMEWORK_RULES["none"])]
    rules.append(_ELEMENT_RULES if mode == "element" else _PAGE_RULES)
    return "\n".join(rules)


def bound_html(existing_html: str, max_chars: int) -> tuple[str, bool]:
    """Cap the existing markup injected as context; returns (html, truncated)."""
    if len(existing_html) <= max_chars:
        return existing_html, False
    return existing_html[:max_chars] + "\n" + TRUNCATION_MARKER, True


def build_messages(
    prompt: str,
    mode: str,
    framework: str,
    existing_html: str | None = None,
    instructions: str | None = None,
    max_context_html_chars: int = 12000,
) -> list[dict]:
    user_parts = []
    if mode == "element" and existing_html:
        html, _ = bound_html(existing_html.strip(), max_context_html_chars)
        user_parts.append(f"Current element HTML:\n{html}")
    user_parts.append(f"Request:\n{prompt.strip()}")
    if instructions and instructions.strip():
        user_parts.append(f"Additional instructions:\n{instructions.strip()}")
    return [
        {"role": "system", "content": system_instruction(framework, mode)},
        {"role": "user", "content": "\n\n".join(user_parts)},
    ]


def build_vision_messages(
    image: bytes,
    content_type: str,
    framework: str,
    instructions: str | None = None,
) -> list[dict]:
    data_url = f"data:{content_type};base64,{base64.b64encode(image).decode('ascii')}"
    text = "Generate the HTML for this screenshot."
    if instructions and instructions.strip():
        text += f"\n\nAdditional instructions:\n{instructions.strip()}"
    return [
        {
            "role": "system",
            "content": "\n".join(
                [_BASE_RULES, _FRAMEWORK_RULES.get(framework, _FRAMEWORK_RULES["none"]), _SCREENSHOT_RULES]
            ),
        },
        {
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": data_url}},
                {"type": "text", "text": text},
            ],
        },
    ]


def strip_code_fences(text: str) -> str:
    """Models often wrap HTML in ```html fences despite being told not to."""
    stripped = text.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()
