"""
Estimate results and the tidy result table

Each estimation call returns a list of ``EstimateResult`` rows, one per
domain. ``results_to_frame`` turns them into a single table with the group
columns first (in the caller's order) followed by the estimate columns.
Column presence does not depend on the variance method.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .constants import RESULT_COLUMNS
from .errors import ConfigurationError


class _MissingKey:
    """Stand-in for a missing group value so it compares equal to itself"""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<NA>"

    def __reduce__(self):
        return (_MissingKey, ())


MISSING = _MissingKey()


def _is_missing(value) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def normalize_key(key) -> Tuple:
    """Hashable group key in which every missing value is the same category"""
    if not isinstance(key, tuple):
        key = (key,)
    return tuple(MISSING if _is_missing(v) else v for v in key)


def row_keys(data: pd.DataFrame, group_by: Sequence[str]) -> List[Tuple]:
    """Normalized group key of every record, in record order"""
    if not group_by:
        return [()] * len(data)
    return [normalize_key(k) for k in data[list(group_by)].itertuples(index=False, name=None)]


def make_diagnostics(**details) -> Dict:
    """Fresh diagnostics payload: flag list, message list and detail keys"""
    diagnostics = {'flags': [], 'messages': []}
    diagnostics.update(details)
    return diagnostics


def add_flag(diagnostics: Dict, flag: str, message: Optional[str] = None) -> Dict:
    if flag not in diagnostics['flags']:
        diagnostics['flags'].append(flag)
    if message:
        diagnostics['messages'].append(message)
    return diagnostics


def copy_diagnostics(diagnostics: Dict) -> Dict:
    copied = dict(diagnostics)
    copied['flags'] = list(diagnostics.get('flags', []))
    copied['messages'] = list(diagnostics.get('messages', []))
    return copied


@dataclass(frozen=True)
class EstimateResult:
    """
    One domain's estimate

    ``method`` is the variance method that actually produced ``se``;
    ``requested_method`` is what the caller asked for. They differ only when
    a fallback happened. Both are fixed at construction.
    """
    group_key: Tuple
    estimate: float
    se: float
    ci_low: float
    ci_high: float
    n: int
    deff: float
    method: str
    requested_method: str
    diagnostics: Dict = field(default_factory=make_diagnostics)
    group_by: Tuple[str, ...] = ()
    variance: float = np.nan
    var_among_psu: float = np.nan
    var_within_psu: float = np.nan

    @property
    def key(self) -> Tuple:
        return normalize_key(self.group_key)

    @property
    def flags(self) -> List[str]:
        return self.diagnostics.get('flags', [])

    @property
    def is_empty(self) -> bool:
        return 'empty_domain' in self.flags


def results_to_frame(results: Iterable[EstimateResult],
                     group_by: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Build the tidy result table

    Parameters
    ----------
    results : iterable of EstimateResult
        Rows to tabulate
    group_by : list of str, optional
        Group column names; taken from the results when omitted

    Returns
    -------
    pd.DataFrame
        Group columns followed by estimate, se, ci_low, ci_high, deff, n,
        method, requested_method, diagnostics, var_among_psu, var_within_psu
    """
    results = list(results)
    if group_by is None:
        group_by = list(results[0].group_by) if results else []
    group_by = [group_by] if isinstance(group_by, str) else list(group_by)

    rows = []
    for res in results:
        if len(res.group_key) != len(group_by):
            raise ConfigurationError(
                f"Result key {res.group_key!r} does not match group columns {group_by}"
            )
        row = dict(zip(group_by, res.group_key))
        row.update({
            'estimate': res.estimate,
            'se': res.se,
            'ci_low': res.ci_low,
            'ci_high': res.ci_high,
            'deff': res.deff,
            'n': res.n,
            'method': res.method,
            'requested_method': res.requested_method,
            'diagnostics': res.diagnostics,
            'var_among_psu': res.var_among_psu,
            'var_within_psu': res.var_within_psu,
        })
        rows.append(row)

    frame = pd.DataFrame(rows, columns=group_by + RESULT_COLUMNS)
    frame['n'] = frame['n'].astype(int)
    return frame


def results_from_frame(frame: pd.DataFrame,
                       group_by: Optional[Union[str, Sequence[str]]] = None) -> List[EstimateResult]:
    """Rebuild result rows from a table with at least estimate and se columns"""
    group_by = [group_by] if isinstance(group_by, str) else list(group_by or [])

    required = ['estimate', 'se'] + group_by
    missing = [c for c in required if c not in frame.columns]
    if missing:
        raise ConfigurationError(
            f"Estimate table is missing column(s) {missing}. Available: {list(frame.columns)}"
        )

    results = []
    for record in frame.to_dict('records'):
        diagnostics = record.get('diagnostics')
        method = record.get('method', 'unknown')
        results.append(EstimateResult(
            group_key=tuple(record[c] for c in group_by),
            estimate=float(record['estimate']),
            se=float(record['se']),
            ci_low=float(record.get('ci_low', np.nan)),
            ci_high=float(record.get('ci_high', np.nan)),
            n=int(record['n']) if 'n' in record and not _is_missing(record['n']) else 0,
            deff=float(record.get('deff', np.nan)),
            method=method,
            requested_method=record.get('requested_method', method),
            diagnostics=copy_diagnostics(diagnostics) if isinstance(diagnostics, dict) else make_diagnostics(),
            group_by=tuple(group_by),
            variance=float(record['se']) ** 2,
        ))
    return results


def display_results(results: pd.DataFrame):
    """Display results table"""
    shown = results.drop(columns=['diagnostics'], errors='ignore')
    print("\n" + "=" * 80)
    print("SVYEST ESTIMATION RESULTS")
    print("=" * 80)
    print(shown.to_string(index=False))
    print("=" * 80 + "\n")
