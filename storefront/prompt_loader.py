from __future__ import annotations

from pathlib import Path
from typing import Dict


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: Reads the file on every call, so prompt edits apply live.
    Dependencies: Used by ResponseGenerator.build_system_instruction.
    Failure Modes: UnicodeDecodeError triggers a tolerant decode that drops invalid bytes.
    If Removed: The model gets no system instruction.
    Testing Notes: Write a file with a BOM and check it is stripped.
    """
    # Strict decode first; fall back to dropping bad bytes.
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        raw = prompt_path.read_bytes()
        return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


def render_prompt(template: str, values: Dict[str, str]) -> str:
    """Fill <<KEY>> placeholders; catalog text may contain braces, so no str.format."""
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace(f"<<{key}>>", value)
    return rendered
