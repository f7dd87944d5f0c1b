# src/canopy_pl/util.py
import sys


def log(msg: str):
    print(msg, flush=True, file=sys.stdout)
