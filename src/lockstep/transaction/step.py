"""
Steps that make up a scripted transaction.

Values captured by earlier steps (see `Execute.into`) are available to
later steps: `Execute` accepts a callable for its params, and `Branch`
decides between two step sequences from them.
"""

from __future__ import annotations

from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
    Union,
)

Values = Mapping[str, Any]
ParamSource = Union[None, Dict[str, Any], Callable[[Values], Dict[str, Any]]]
PosargSource = Union[
    None, Sequence[Any], Callable[[Values], Sequence[Any]]
]


def _shorten(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


class Step:
    """An atomic unit of scripted work"""

    issues_sql = False

    def describe(self) -> str:
        return self.__class__.__name__

    def __str__(self) -> str:
        return self.describe()

    def __repr__(self) -> str:
        return f"<{self.describe()}>"


class Execute(Step):
    issues_sql = True

    def __init__(
        self,
        query: str,
        params: ParamSource = None,
        *,
        posargs: PosargSource = None,
        into: Optional[str] = None,
        scalar: bool = False,
    ) -> None:
        """Run one SQL statement

        Args:
            query (str): SQL text, optionally with `$name` or `$1` params
            params (dict or callable, optional): Named parameters, or a
                callable receiving the captured values and returning them
            posargs (sequence or callable, optional): Positional parameters
            into (str, optional): Capture the result under this name
            scalar (bool, optional): Capture only the first column of the
                first row instead of the whole `RowSet`. Defaults to False
        """
        if params is not None and posargs is not None:
            raise ValueError("Use either params or posargs, not both")
        self.query = query
        self.params = params
        self.posargs = posargs
        self.into = into
        self.scalar = scalar

    def resolve_params(self, values: Values) -> Optional[Dict[str, Any]]:
        if callable(self.params):
            return self.params(values)
        return self.params

    def resolve_posargs(self, values: Values) -> Optional[Sequence[Any]]:
        if callable(self.posargs):
            return self.posargs(values)
        return self.posargs

    def describe(self) -> str:
        return f"Execute({_shorten(self.query)!r})"


class Checkpoint(Step):
    """Suspension point where control may be handed elsewhere"""

    def __init__(self, name: str) -> None:
        self.name = name

    def describe(self) -> str:
        return f"Checkpoint({self.name!r})"


class Branch(Step):
    def __init__(
        self,
        predicate: Callable[[Values], bool],
        then: Sequence[Step] = (),
        otherwise: Sequence[Step] = (),
    ) -> None:
        self.predicate = predicate
        self.then = list(then)
        self.otherwise = list(otherwise)

    def choose(self, values: Values) -> Sequence[Step]:
        return self.then if self.predicate(values) else self.otherwise

    def describe(self) -> str:
        name = getattr(self.predicate, "__name__", "predicate")
        return f"Branch({name})"


class Pause(Step):
    """Hold whatever the transaction has locked for a while"""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    def describe(self) -> str:
        return f"Pause({self.seconds})"


class Commit(Step):
    issues_sql = True


class Rollback(Step):
    issues_sql = True
