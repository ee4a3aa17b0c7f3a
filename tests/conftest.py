from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


ARFF_HEADER = """% Synthetic orthopaedic patients
@relation column_2C_weka

@attribute pelvic_incidence numeric
@attribute 'pelvic_tilt numeric' numeric
@attribute lumbar_lordosis_angle numeric
@attribute sacral_slope numeric
@attribute pelvic_radius numeric
@attribute degree_spondylolisthesis numeric
@attribute class {Abnormal,Normal}

@data
"""


def _make_patients(rows: int = 150) -> pd.DataFrame:
    rng = np.random.default_rng(20261019)
    abnormal = rng.random(rows) < 0.6

    pelvic_tilt = np.round(rng.normal(17, 9, size=rows), 2)
    sacral_slope = np.round(rng.normal(40, 12, size=rows), 2)
    return pd.DataFrame(
        {
            "pelvic_incidence": np.round(pelvic_tilt + sacral_slope, 2),
            "pelvic_tilt": pelvic_tilt,
            "lumbar_lordosis_angle": np.round(rng.normal(50, 15, size=rows) + 8 * abnormal, 2),
            "sacral_slope": sacral_slope,
            "pelvic_radius": np.round(rng.normal(120, 12, size=rows) - 6 * abnormal, 2),
            "degree_spondylolisthesis": np.round(rng.normal(5, 15, size=rows) + 25 * abnormal, 2),
            "class": np.where(abnormal, "Abnormal", "Normal"),
        }
    )


def write_arff(df: pd.DataFrame, path: Path, header: str = ARFF_HEADER) -> Path:
    lines = [",".join(str(v) for v in row) for row in df.itertuples(index=False)]
    path.write_text(header + "\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def patients() -> pd.DataFrame:
    return _make_patients()


@pytest.fixture
def arff_path(tmp_path: Path, patients: pd.DataFrame) -> Path:
    return write_arff(patients, tmp_path / "column_2C_weka.arff")


@pytest.fixture
def string_attribute_arff_path(tmp_path: Path, patients: pd.DataFrame) -> Path:
    # scipy's loader rejects string attributes
    header = ARFF_HEADER.replace(
        "@attribute pelvic_incidence numeric",
        "@attribute patient string\n@attribute pelvic_incidence numeric",
    )
    tagged = patients.copy()
    tagged.insert(0, "patient", [f"'p{i}'" for i in range(len(tagged))])
    return write_arff(tagged, tmp_path / "column_2C_tagged.arff", header=header)
