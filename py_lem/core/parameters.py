"""Run parameters for landscape evolution."""

import math
from typing import Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidMeshError


class SimulationParameters(BaseModel):
    """Per-run constants of the stream-power model. Immutable once built."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    erodibility: float = Field(default=1.0, ge=0, description="Erodibility coefficient K")
    area_exponent: float = Field(default=0.5, ge=0, description="Drainage area exponent m")
    slope_exponent: float = Field(default=1.0, gt=0, description="Slope exponent n")
    uplift_rate: float = Field(default=1.0, ge=0, description="Uplift rate U")
    time_step: float = Field(default=1.0, gt=0, description="Time step dt")
    max_iterations: int = Field(default=100, gt=0, description="Maximum number of time steps")
    convergence_threshold: float = Field(
        default=0.0, ge=0, description="Stop when max |dz| falls below this (0 disables)"
    )

    uplift_rates: Optional[np.ndarray] = Field(
        default=None, description="Per-site uplift rate override"
    )
    erodibilities: Optional[np.ndarray] = Field(
        default=None, description="Per-site erodibility override"
    )
    max_slope: Optional[float] = Field(
        default=None, ge=0, lt=math.pi / 2, description="Maximum slope angle in radians"
    )
    max_slopes: Optional[np.ndarray] = Field(
        default=None, description="Per-site maximum slope angle override"
    )

    newton_max_iterations: int = Field(default=20, gt=0, description="Newton iteration cap per site")
    newton_tolerance: float = Field(default=1e-10, gt=0, description="Relative Newton step tolerance")
    workers: Optional[int] = Field(
        default=None, gt=0, description="Worker threads for basin fan-out (None uses settings)"
    )

    @field_validator("uplift_rates", "erodibilities", "max_slopes", mode="before")
    @classmethod
    def _as_nonnegative_array(cls, value):
        if value is None:
            return None
        array = np.array(value, dtype=np.float64)
        if array.ndim != 1:
            raise ValueError("per-site overrides must be one-dimensional")
        if not np.all(np.isfinite(array)) or np.any(array < 0):
            raise ValueError("per-site overrides must be finite and non-negative")
        array.setflags(write=False)
        return array

    @field_validator("max_slopes")
    @classmethod
    def _below_vertical(cls, value):
        if value is not None and np.any(value >= math.pi / 2):
            raise ValueError("slope angles must be below pi/2")
        return value

    def site_uplift(self, n_sites: int) -> np.ndarray:
        """Uplift rate for every site."""
        if self.uplift_rates is not None:
            return self.uplift_rates
        return np.full(n_sites, self.uplift_rate)

    def site_erodibility(self, n_sites: int) -> np.ndarray:
        """Erodibility for every site."""
        if self.erodibilities is not None:
            return self.erodibilities
        return np.full(n_sites, self.erodibility)

    def site_max_slope(self, n_sites: int) -> Optional[np.ndarray]:
        """Maximum slope angle for every site, or None when slopes are unbounded."""
        if self.max_slopes is not None:
            return self.max_slopes
        if self.max_slope is not None:
            return np.full(n_sites, self.max_slope)
        return None

    def check_mesh_size(self, n_sites: int) -> None:
        """Raise InvalidMeshError if a per-site override does not match the mesh."""
        for name in ("uplift_rates", "erodibilities", "max_slopes"):
            values = getattr(self, name)
            if values is not None and len(values) != n_sites:
                raise InvalidMeshError(
                    f"{name} has {len(values)} entries for a mesh of {n_sites} sites"
                )
