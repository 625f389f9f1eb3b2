# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Prompt templates bundled with the workflows.

Templates live in prompts.yaml next to this module, grouped by workflow, and
use str.format placeholders.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

PROMPTS_PATH = Path(__file__).parent / "prompts.yaml"

# Module-level cache of the bundled file
_prompts_cache: Optional[dict[str, dict[str, str]]] = None


def load_prompts(path: Optional[Path] = None) -> dict[str, dict[str, str]]:
    """Load prompt templates, caching the bundled file."""
    global _prompts_cache

    if path is None and _prompts_cache is not None:
        return _prompts_cache

    source = path or PROMPTS_PATH
    data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    logger.debug(f"Loaded prompt templates from {source}")

    if path is None:
        _prompts_cache = data
    return data


def render(workflow: str, name: str, /, **values: Any) -> str:
    """Render one template.

    Raises:
        KeyError: If the workflow or template name is unknown
    """
    template = load_prompts()[workflow][name]
    return template.format(**values) if values else template
