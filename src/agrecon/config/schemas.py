from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Literal, Optional, List, Union

class RunCfg(BaseModel):
    """
    Global run controls.
    """

    # Which runs to process; None = every run found in the input file
    runs: Optional[List[int]] = None

    # Performance / execution
    workers: Union[int, Literal["auto"]] = "auto"
    progress: bool = True

    # Diagnostics
    diagnostics_level: int = 1  # 0=off, 1=minimal, 2=verbose

    # Limits
    max_events: Optional[int] = None  # per run

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v

    @field_validator("workers")
    def _workers_nonneg(cls, v):
        if isinstance(v, int) and v < 0:
            raise ValueError("workers must be >= 0 or 'auto'")
        return v

class IOCfg(BaseModel):
    """
    TOML:

    [io]
    input_path  = "raw_events.h5"   # decoded samples, /runs/<run>/...
    output_path = "vertices.h5"
    """

    input_path: str
    output_path: str

class StoreCfg(BaseModel):
    """
    Calibration store selection.

    TOML:

    [store]
    path = "calibration/"          # directory holding manifest.toml
    version = 3                    # omit for the latest store version
    families = ["awb", "pwb"]
    simulation_fallback = true     # unit gains for the simulation run
    """

    path: str
    version: Optional[int] = None
    families: List[Literal["awb", "pwb"]] = Field(default_factory=lambda: ["awb", "pwb"])
    simulation_fallback: bool = True

    @field_validator("families")
    def _families_nonempty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("store.families must name at least one family")
        if len(set(v)) != len(v):
            raise ValueError("store.families has duplicates")
        return v

class ReconstructionCfg(BaseModel):
    """
    Space-point matching, Hough track finding and vertex selection.
    Lengths in mm, times in ns, angles in rad.
    """

    # Space points
    drift_velocity_mm_per_ns: float = Field(0.016, gt=0)
    match_window_ns: float = Field(50.0, gt=0)
    phi_match_rad: float = Field(0.12, gt=0)
    pad_cluster_rows: int = Field(3, ge=0)  # pads within +-N rows of the peak pad set z

    # Hough / conformal clustering
    rho_bins: int = Field(200, gt=0)
    theta_bins: int = Field(360, gt=2)
    max_clusters: int = Field(8, gt=0)
    min_points_per_cluster: int = Field(4, ge=2)
    max_distance_mm: float = Field(40.0, gt=0)

    # Track merging: clusters closer than this in angle and offset are one track
    min_opening_angle_rad: float = Field(0.05, gt=0)
    merge_distance_mm: float = Field(10.0, gt=0)

    # Vertex candidates
    max_dca_mm: float = Field(20.0, gt=0)
    max_vertex_radius_mm: float = Field(109.0, gt=0)

class Config(BaseModel):
    """
    Top-level TOML configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg
    store: StoreCfg
    reconstruction: ReconstructionCfg = Field(default_factory=ReconstructionCfg)


# ---------------------------------------------------------------------------
# Calibration store manifest (<store>/manifest.toml)
# ---------------------------------------------------------------------------

class _RecordEntry(BaseModel):
    id: str
    family: Literal["awb", "pwb"]
    runs: List[int]                      # [start] or [start, end)
    times: Optional[List[float]] = None  # unix seconds, [start] or [start, end)
    published: datetime
    store_version: Optional[int] = None
    supersedes: List[str] = Field(default_factory=list)

    @field_validator("runs", "times")
    def _interval_shape(cls, v):
        if v is None:
            return v
        if len(v) not in (1, 2):
            raise ValueError("interval must be [start] or [start, end]")
        if len(v) == 2 and not v[1] > v[0]:
            raise ValueError(f"empty interval {v}")
        return v

    @field_validator("store_version")
    def _version_positive(cls, v):
        if v is not None and v < 1:
            raise ValueError("store_version starts at 1")
        return v

class GeometryEntry(_RecordEntry):
    """
    [[geometry]]
    id = "pwb-4418"
    family = "pwb"
    layout = "pwb-4418"     # board layout name, or omit to use runs[0]
    runs = [4418]
    published = 2022-08-01T00:00:00Z
    dead = ["pwb:12:0:5"]
    """

    layout: Optional[Union[str, int]] = None
    dead: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _default_layout(self):
        if self.layout is None:
            self.layout = self.runs[0]
        return self

class CalibrationEntry(_RecordEntry):
    """
    [[calibration]]
    id = "wire-gain-9277"
    family = "awb"
    runs = [9277, 11084]
    published = 2023-04-12T00:00:00Z
    table = "wire_gain_9277.npz"
    label = "wire gain"
    """

    table: str
    label: Optional[str] = None

class StoreManifest(BaseModel):
    name: str = "store"
    geometry: List[GeometryEntry] = Field(default_factory=list)
    calibration: List[CalibrationEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self):
        ids = [e.id for e in self.geometry] + [e.id for e in self.calibration]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValueError(f"duplicate record ids in manifest: {dupes}")
        return self
