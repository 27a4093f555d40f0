import pathlib

import pytest

DATA_DIR = pathlib.Path(__file__).parent / "data"

JULY_FIRST = [
    "01/07/2019 09:00,7.38,267.7,13.78,15.378,15.66,174.9,75.8",
    "01/07/2019 10:00,6.83,265.1,14.38,15.476,15.78,149.7,76.6",
    "01/07/2019 11:00,5.525,272.4,17.87,15.7,15.96,107.6,75.5",
    "01/07/2019 12:00,7.95,283.2,14.51,18.59,19.03,564.8,62.77",
    "01/07/2019 13:00,7.83,285.7,16.51,18.334,18.71,676.8,57.59",
]


@pytest.fixture
def data_dir():
    return DATA_DIR


@pytest.fixture
def july_lines():
    return list(JULY_FIRST)
