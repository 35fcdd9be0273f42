from pathlib import Path
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from rebalancer.logging import setup_logging
from rebalancer.signals.scheduler import run_price_refresh_sync

if __name__ == '__main__':
    setup_logging()
    result = run_price_refresh_sync()
    print('Symbols:', result['symbols'], '| quoted:', result['quoted'],
          '| positions updated:', result['positions_updated'],
          '| holdings updated:', result['holdings_updated'])
    for w in result['warnings']:
        print(' -', w['message'])
