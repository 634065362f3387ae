"""
Weighted statistics for svyest

A ``StatisticSpec`` names the point statistic to estimate:
- Weighted mean of a column
- Weighted total of a column
- Weighted ratio of two columns (ratio of weighted sums)

The statistic is always evaluated for ONE weight vector at a time, for all
domains at once. The variance backend calls it with the full-sample weights
for the point estimate and again with each replicate weight vector for
resampling variance, exactly as replicate estimation frameworks do.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError

STATISTIC_KINDS = ("mean", "total", "ratio")


class StatisticFunctions:
    """Weighted domain sums and per-unit linearized values"""

    @staticmethod
    def domain_sums(values: np.ndarray, weights: np.ndarray, codes: np.ndarray,
                    usable: np.ndarray, n_domains: int) -> np.ndarray:
        """
        Compute weighted sums per domain

        Parameters
        ----------
        values : np.ndarray
            Unit values
        weights : np.ndarray
            Weight vector (full-sample or one replicate)
        codes : np.ndarray
            Domain code of each unit
        usable : np.ndarray
            Boolean mask of units that contribute
        n_domains : int
            Number of domains

        Returns
        -------
        np.ndarray
            Weighted sum of ``values`` for each domain
        """
        return np.bincount(codes[usable], weights=(values * weights)[usable],
                           minlength=n_domains)

    @staticmethod
    def safe_ratio(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
        """Elementwise ratio, missing where the denominator is zero"""
        nonzero = denominator != 0
        out = np.full(len(numerator), np.nan)
        out[nonzero] = numerator[nonzero] / denominator[nonzero]
        return out


@dataclass(frozen=True)
class StatisticSpec:
    """What to estimate: kind of statistic and the column(s) it reads"""
    kind: str
    column: str
    denominator: Optional[str] = None

    @classmethod
    def mean(cls, column: str) -> "StatisticSpec":
        return cls("mean", column)

    @classmethod
    def total(cls, column: str) -> "StatisticSpec":
        return cls("total", column)

    @classmethod
    def ratio(cls, numerator: str, denominator: str) -> "StatisticSpec":
        return cls("ratio", numerator, denominator)

    @property
    def columns(self) -> List[str]:
        return [self.column] if self.denominator is None else [self.column, self.denominator]

    def describe(self) -> str:
        if self.kind == "ratio":
            return f"ratio({self.column}/{self.denominator})"
        return f"{self.kind}({self.column})"

    def validate(self, design):
        """Fail fast on an unknown kind or a column absent from the design"""
        if self.kind not in STATISTIC_KINDS:
            raise ConfigurationError(
                f"Unknown statistic kind: {self.kind!r}. Available: {list(STATISTIC_KINDS)}"
            )
        if self.kind == "ratio" and self.denominator is None:
            raise ConfigurationError("A ratio statistic needs a denominator column")
        if self.kind != "ratio" and self.denominator is not None:
            raise ConfigurationError(f"A {self.kind} statistic takes no denominator column")
        design.check_columns(self.columns, context=f"statistic {self.describe()}")

    def prepare(self, design) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Extract numeric unit values

        Returns
        -------
        y : np.ndarray
            Numerator values (0 where unusable)
        x : np.ndarray
            Denominator values (1 for means and totals)
        usable : np.ndarray
            True where every referenced value is present and finite
        """
        y = pd.to_numeric(design.data[self.column], errors='coerce').to_numpy(dtype=float)
        if self.denominator is not None:
            x = pd.to_numeric(design.data[self.denominator], errors='coerce').to_numpy(dtype=float)
        else:
            x = np.ones(len(y))

        usable = np.isfinite(y) & np.isfinite(x)
        y = np.where(usable, y, 0.0)
        x = np.where(usable, x, 0.0)
        return y, x, usable

    def evaluate(self, prepared, weights: np.ndarray, codes: np.ndarray,
                 n_domains: int) -> np.ndarray:
        """Point statistic per domain for one weight vector"""
        y, x, usable = prepared
        wy = StatisticFunctions.domain_sums(y, weights, codes, usable, n_domains)
        if self.kind == "total":
            counts = np.bincount(codes[usable], minlength=n_domains)
            return np.where(counts > 0, wy, np.nan)
        wx = StatisticFunctions.domain_sums(x, weights, codes, usable, n_domains)
        return StatisticFunctions.safe_ratio(wy, wx)

    def influence(self, prepared, weights: np.ndarray, codes: np.ndarray,
                  estimates: np.ndarray, n_domains: int) -> np.ndarray:
        """
        Linearized (influence) value of each unit for its own domain

        Totals are linear already. For means and ratios R = Y/X the Taylor
        linearization gives u_i = (y_i - R x_i) / X.
        """
        y, x, usable = prepared
        if self.kind == "total":
            u = y.copy()
        else:
            wx = StatisticFunctions.domain_sums(x, weights, codes, usable, n_domains)
            est = estimates[codes]
            denom = wx[codes]
            with np.errstate(divide='ignore', invalid='ignore'):
                u = (y - est * x) / denom
        u[~usable] = 0.0
        u[~np.isfinite(u)] = 0.0
        return u

    def srs_variance(self, prepared, weights: np.ndarray, codes: np.ndarray,
                     estimates: np.ndarray, n_domains: int) -> np.ndarray:
        """
        Variance the same statistic would have under simple random sampling
        with replacement of the same number of units (deff denominator)
        """
        y, x, usable = prepared
        n = np.bincount(codes[usable], minlength=n_domains).astype(float)
        w_sum = np.bincount(codes[usable], weights=weights[usable], minlength=n_domains)
        wy = StatisticFunctions.domain_sums(y, weights, codes, usable, n_domains)

        with np.errstate(divide='ignore', invalid='ignore'):
            if self.kind == "total":
                centre = (wy / w_sum)[codes]
                resid = y - centre
            else:
                resid = y - estimates[codes] * x
            resid = np.where(usable & np.isfinite(resid), resid, 0.0)

            ss = np.bincount(codes[usable], weights=(weights * resid ** 2)[usable],
                             minlength=n_domains)
            s2 = ss / w_sum * n / (n - 1)

            if self.kind == "total":
                v_srs = w_sum ** 2 * s2 / n
            else:
                wx = StatisticFunctions.domain_sums(x, weights, codes, usable, n_domains)
                x_bar = wx / w_sum
                v_srs = s2 / (n * x_bar ** 2)

        return np.where((n >= 2) & np.isfinite(v_srs), v_srs, np.nan)
