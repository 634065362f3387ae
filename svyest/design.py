"""
Sample design container

A ``SampleDesign`` wraps the sampled records together with the columns that
describe how they were drawn:
- Sampling weights (required, finite and positive)
- Stratum and cluster (primary sampling unit) labels
- Finite population correction per stratum
- Optional replicate weights produced by an external generator

Designs are never modified in place. Every operation that adds or changes a
column returns a new design over a copied frame.
"""

import dataclasses
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import ConfigurationError

REPLICATE_TYPES = ("bootstrap", "jackknife", "custom")


@dataclass
class SampleDesign:
    """Weighted, stratified, clustered sample"""
    data: pd.DataFrame
    weight: str
    strata: Optional[str] = None
    cluster: Optional[str] = None
    fpc: Optional[str] = None
    replicate_weights: Optional[np.ndarray] = None  # n_units x n_replicates
    replicate_type: Optional[str] = None
    replicate_scale: Optional[float] = None  # None: default for replicate_type
    replicate_rscales: Optional[np.ndarray] = None

    def __post_init__(self):
        if not isinstance(self.data, pd.DataFrame):
            raise ConfigurationError(
                f"Design data must be a pandas DataFrame, got {type(self.data).__name__}"
            )

        design_cols = [self.weight, self.strata, self.cluster, self.fpc]
        self.check_columns([c for c in design_cols if c is not None], context="design")

        weights = pd.to_numeric(self.data[self.weight], errors='coerce').to_numpy(dtype=float)
        bad = ~np.isfinite(weights) | (weights <= 0)
        if bad.any():
            raise ConfigurationError(
                f"Weight column '{self.weight}' must be finite and positive: "
                f"{int(bad.sum())} invalid value(s)"
            )

        if self.replicate_weights is not None:
            self._setup_replicates()
        elif self.replicate_type is not None:
            raise ConfigurationError(
                f"replicate_type='{self.replicate_type}' given without replicate_weights"
            )

    def _setup_replicates(self):
        """Validate the attached replicate weight matrix"""
        rep = np.asarray(self.replicate_weights, dtype=float)
        if rep.ndim == 1:
            rep = rep.reshape(-1, 1)
        if rep.ndim != 2 or rep.shape[0] != len(self.data):
            raise ConfigurationError(
                f"Replicate weights must have one row per unit: "
                f"got shape {rep.shape} for {len(self.data)} units"
            )
        if not np.all(np.isfinite(rep)) or np.any(rep < 0):
            raise ConfigurationError("Replicate weights must be finite and non-negative")
        self.replicate_weights = rep

        if self.replicate_type is None:
            self.replicate_type = "custom"
        if self.replicate_type not in REPLICATE_TYPES:
            raise ConfigurationError(
                f"Unknown replicate_type: {self.replicate_type!r}. Available: {list(REPLICATE_TYPES)}"
            )

        if self.replicate_scale is not None and not self.replicate_scale > 0:
            raise ConfigurationError("replicate_scale must be positive")

        if self.replicate_rscales is not None:
            rscales = np.asarray(self.replicate_rscales, dtype=float).ravel()
            if len(rscales) != rep.shape[1]:
                raise ConfigurationError(
                    f"replicate_rscales has {len(rscales)} entries for {rep.shape[1]} replicates"
                )
            self.replicate_rscales = rscales

    @classmethod
    def from_replicate_columns(cls,
                               data: pd.DataFrame,
                               weight: str,
                               rep_weight_prefix: str,
                               n_reps: int,
                               replicate_type: str = "custom",
                               replicate_scale: Optional[float] = None,
                               **kwargs) -> "SampleDesign":
        """
        Build a design whose replicate weights are stored as numbered columns

        Parameters
        ----------
        data : pd.DataFrame
            Sampled records, including the replicate weight columns
        weight : str
            Full-sample weight column
        rep_weight_prefix : str
            Replicate weight prefix; columns are ``{prefix}1`` .. ``{prefix}{n_reps}``
        n_reps : int
            Number of replicate weight columns
        replicate_type : str, default 'custom'
            'bootstrap', 'jackknife' or 'custom'
        replicate_scale : float, optional
            Overall variance multiplier for the replicates
        **kwargs
            Passed through to ``SampleDesign`` (strata, cluster, fpc, ...)
        """
        rep_cols = [f"{rep_weight_prefix}{i}" for i in range(1, n_reps + 1)]

        # Accept upper-case column names as well
        if rep_cols and rep_cols[0] not in data.columns:
            upper = [c.upper() for c in rep_cols]
            if upper[0] in data.columns:
                rep_cols = upper

        missing = [c for c in rep_cols if c not in data.columns]
        if missing:
            raise ConfigurationError(
                f"Replicate weight column(s) not found in data: {missing[:5]}"
                f"{' ...' if len(missing) > 5 else ''}"
            )

        return cls(
            data=data,
            weight=weight,
            replicate_weights=data[rep_cols].to_numpy(dtype=float),
            replicate_type=replicate_type,
            replicate_scale=replicate_scale,
            **kwargs
        )

    @property
    def n_units(self) -> int:
        return len(self.data)

    @property
    def columns(self) -> List[str]:
        return list(self.data.columns)

    @property
    def weights(self) -> np.ndarray:
        return self.data[self.weight].to_numpy(dtype=float)

    @property
    def has_replicates(self) -> bool:
        return self.replicate_weights is not None

    @property
    def n_replicates(self) -> int:
        return 0 if self.replicate_weights is None else self.replicate_weights.shape[1]

    def check_columns(self, columns: Sequence[str], context: str = "estimation"):
        """Raise ConfigurationError listing any column absent from the data"""
        missing = [c for c in columns if c not in self.data.columns]
        if missing:
            raise ConfigurationError(
                f"Column(s) {missing} required for {context} not found in design. "
                f"Available columns: {list(self.data.columns)}"
            )

    def stratum_codes(self) -> np.ndarray:
        """Integer stratum code per unit (a single stratum when unstratified)"""
        if self.strata is None:
            return np.zeros(self.n_units, dtype=int)
        return self.data.groupby(self.strata, dropna=False, sort=False).ngroup().to_numpy()

    def psu_codes(self) -> np.ndarray:
        """Integer primary sampling unit code per unit, PSUs nested in strata"""
        if self.cluster is None:
            return np.arange(self.n_units)
        keys = [self.cluster] if self.strata is None else [self.strata, self.cluster]
        return self.data.groupby(keys, dropna=False, sort=False).ngroup().to_numpy()

    def psu_structure(self):
        """
        PSU code per unit, stratum code per PSU and PSU count per stratum

        Returns
        -------
        psu : np.ndarray
            PSU code of each unit
        psu_stratum : np.ndarray
            Stratum code of each PSU
        n_h : np.ndarray
            Number of sampled PSUs in each stratum
        """
        psu = self.psu_codes()
        strata = self.stratum_codes()
        n_psu = int(psu.max()) + 1 if len(psu) else 0
        psu_stratum = np.zeros(n_psu, dtype=int)
        psu_stratum[psu] = strata
        n_strata = int(strata.max()) + 1 if len(strata) else 0
        n_h = np.bincount(psu_stratum, minlength=n_strata)
        return psu, psu_stratum, n_h

    def sampling_fractions(self, n_h: np.ndarray) -> np.ndarray:
        """
        Sampling fraction per stratum from the FPC column

        FPC values <= 1 are read as sampling fractions, values > 1 as the
        number of PSUs in the stratum population.
        """
        if self.fpc is None:
            return np.zeros(len(n_h))

        fpc = pd.to_numeric(self.data[self.fpc], errors='coerce')
        per_stratum = fpc.groupby(self.stratum_codes()).first().reindex(range(len(n_h)))
        values = per_stratum.to_numpy(dtype=float)

        if np.any(~np.isfinite(values) | (values <= 0)):
            raise ConfigurationError(f"FPC column '{self.fpc}' must be positive in every stratum")

        fractions = np.where(values <= 1, values, n_h / values)
        if np.any(fractions > 1):
            raise ConfigurationError(
                f"FPC column '{self.fpc}' gives fewer population PSUs than sampled PSUs"
            )
        return fractions

    def with_column(self, name: str, values, replace: bool = False) -> "SampleDesign":
        """
        Return a new design with an added (or replaced) column

        The caller's frame is never touched. Without ``replace=True`` an
        existing column of the same name is a configuration error rather
        than a silent overwrite.
        """
        if name in self.data.columns and not replace:
            raise ConfigurationError(
                f"Column '{name}' already exists in the design data and would be overwritten"
            )
        data = self.data.copy()
        data[name] = values
        return dataclasses.replace(self, data=data)

    def subset(self, mask) -> "SampleDesign":
        """Return a new design restricted to the rows where ``mask`` is True"""
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_units:
            raise ConfigurationError(
                f"Subset mask has {len(mask)} entries for {self.n_units} units"
            )
        reps = None if self.replicate_weights is None else self.replicate_weights[mask]
        return dataclasses.replace(
            self,
            data=self.data.loc[mask].reset_index(drop=True),
            replicate_weights=reps,
        )
