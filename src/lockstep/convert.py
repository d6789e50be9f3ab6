import re
from typing import Any, Mapping, Optional, Sequence

from lockstep.exception import LockstepError

DOLLAR_KEYWORD = re.compile(r"(\$([a-z][a-z0-9_]*))")
DOLLAR_POSITIONAL = re.compile(r"(\$(\d+))")


def convert_sql_params(
    query: str,
    positional_sub: str = r"%s",
    keyword_sub: str = r"%(\2)s",
    params: Optional[Mapping[str, Any]] = None,
    posargs: Optional[Sequence[Any]] = None,
) -> str:
    """Rewrite `$name` and `$1` placeholders for the driver

    When `params` or `posargs` are given, every placeholder in the query
    must have a value among them.
    """
    names = {match[1] for match in DOLLAR_KEYWORD.findall(query)}
    positions = {int(match[1]) for match in DOLLAR_POSITIONAL.findall(query)}
    if names and positions:
        raise LockstepError(
            f"Cannot mix named and positional SQL params in: {query}"
        )

    if params is not None:
        missing = sorted(names - set(params))
        if missing:
            raise LockstepError(
                f"No value for ${', $'.join(missing)} in: {query.strip()}"
            )
    if posargs is not None and positions and max(positions) > len(posargs):
        raise LockstepError(
            f"${max(positions)} used but only {len(posargs)} positional "
            f"params given in: {query.strip()}"
        )

    if names:
        query = DOLLAR_KEYWORD.sub(keyword_sub, query, 0)
    if positions:
        query = DOLLAR_POSITIONAL.sub(positional_sub, query, 0)
    return query
