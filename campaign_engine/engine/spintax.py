"""
Message template rendering for broadcast nodes.

Variables are substituted first ({{name}}), then spintax groups ({a|b|c})
are expanded innermost first, so nested groups work:

    render("{Oi|Olá} {{name}}, {tudo bem|{como vai|e aí}}?", {"name": "Ana"}, rng)
"""

import random
import re
from typing import Mapping, Optional

VARIABLE_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
SPINTAX_PATTERN = re.compile(r"\{([^{}]*\|[^{}]*)\}")

# Nesting depth guard for malformed templates
MAX_SPINTAX_PASSES = 10


def substitute_variables(template: str, variables: Mapping[str, str]) -> str:
    """Replace {{name}} with the variable value; unknown names become empty."""
    return VARIABLE_PATTERN.sub(lambda m: str(variables.get(m.group(1), "")), template)


def expand_spintax(text: str, rng: Optional[random.Random] = None) -> str:
    """Pick one alternative for every {a|b|c} group."""
    rng = rng or random
    for _ in range(MAX_SPINTAX_PASSES):
        expanded = SPINTAX_PATTERN.sub(lambda m: rng.choice(m.group(1).split("|")), text)
        if expanded == text:
            break
        text = expanded
    return text


def render(
    template: str,
    variables: Mapping[str, str],
    rng: Optional[random.Random] = None,
    spintax: bool = True,
) -> str:
    text = substitute_variables(template, variables)
    if spintax:
        text = expand_spintax(text, rng)
    return re.sub(r"[ \t]{2,}", " ", text).strip()
