from pathlib import Path
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from rebalancer.config import settings
from rebalancer.db import get_conn, migrate
from rebalancer.portfolio.accounts import account_display_name
from rebalancer.portfolio.compliance import check_account_compliance
from rebalancer.portfolio.storage import SqliteHoldingRegistry, list_accounts

if __name__ == '__main__':
    conn = get_conn(settings.db_path)
    migrate(conn)
    registry = SqliteHoldingRegistry(conn)
    failing = 0
    for account in list_accounts(conn):
        result = check_account_compliance(account, registry)
        if result['compliant']:
            continue
        failing += 1
        print(f"{account_display_name(account)} ({account.account_type})")
        for issue in result['issues']:
            print('  -', issue['ticker'] or '*', issue['issue'])
    print('Accounts out of compliance:', failing)
    sys.exit(1 if failing else 0)
