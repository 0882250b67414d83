import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so tests can import clubc
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


SCENARIO = "COLOR,red,200,100,40\nL,2\nC,red 50%\nD,100\nE\nTIME,300\nD,50\n"

AUP = """<?xml version="1.0" standalone="no" ?>
<project xmlns="http://audacity.sourceforge.net/xml/" projname="show_data" rate="44100.0">
  <wavetrack name="Audio Track" channel="2" linked="0"/>
  <labeltrack name="Label Track" numlabels="2" height="73" minimized="0">
    <label t="0.0000000000" t1="0.0000000000" title="intro"/>
    <label t="12.5000000000" t1="20.2500000000" title="chorus"/>
  </labeltrack>
</project>
"""


@pytest.fixture
def scenario():
    return SCENARIO


@pytest.fixture
def aup_file(tmp_path):
    path = tmp_path / "show.aup"
    path.write_text(AUP)
    return path
