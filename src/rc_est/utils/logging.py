from pathlib import Path
from threading import Lock
import csv
from typing import Dict, Any, Sequence

import numpy as np

class CsvLogger:
    """Row-per-event CSV sink; vector fields are flattened to <name>_<i> columns."""
    def __init__(self, path: str, fieldnames: Sequence[str]):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.f = open(path, 'w', newline='')
        self.writer = csv.DictWriter(self.f, fieldnames=list(fieldnames))
        self.writer.writeheader()
        self._lock = Lock()
    def write(self, row: Dict[str, Any]):
        with self._lock:
            self.writer.writerow(flatten(row)); self.f.flush()
    def close(self):
        with self._lock:
            self.f.close()
    def __enter__(self): return self
    def __exit__(self, *exc): self.close()

def flatten(row: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in row.items():
        if isinstance(v, (np.ndarray, list, tuple)):
            for i, x in enumerate(np.asarray(v, dtype=float).ravel()):
                out[f"{k}_{i}"] = float(x)
        else:
            out[k] = v
    return out

def vector_fields(name: str, n: int):
    return [f"{name}_{i}" for i in range(n)]
