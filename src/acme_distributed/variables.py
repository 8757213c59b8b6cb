"""Template variable expansion for configuration values."""

import re

# Matches any {{ name }} placeholder, tolerating whitespace inside the braces.
PLACEHOLDER = re.compile(r"\{\{\s*[a-zA-Z0-9_]+\s*\}\}")


def _placeholder_for(name: str) -> re.Pattern[str]:
    return re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")


def expand_variables(
    template: str,
    variables: dict[str, str],
    remove_unknown: bool = True,
) -> str:
    """Expand ``{{ name }}`` placeholders in a string.

    Every occurrence of every known variable is substituted. Passes are
    repeated until nothing changes, so values may themselves reference
    other variables. The number of passes is bounded by the number of
    variables, which stops self-referencing values from looping forever.

    Args:
        template: String possibly containing placeholders.
        variables: Mapping of variable name to replacement value.
        remove_unknown: Erase placeholders for names not in ``variables``.

    Returns:
        The expanded string.

    Example:
        >>> expand_variables("{{ endpoint }}/{{endpoint}}", {"endpoint": "prod"})
        'prod/prod'
    """
    if not PLACEHOLDER.search(template):
        return template

    patterns = {name: _placeholder_for(name) for name in variables}
    result = template
    for _ in range(len(patterns) + 1):
        previous = result
        for name, pattern in patterns.items():
            value = str(variables[name])
            result = pattern.sub(lambda _match, value=value: value, result)
        if result == previous:
            break

    if remove_unknown:
        result = PLACEHOLDER.sub("", result)
    return result
