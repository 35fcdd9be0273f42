from pathlib import Path
import argparse
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from rebalancer.config import settings
from rebalancer.db import get_conn, migrate
from rebalancer.logging import setup_logging
from rebalancer.portfolio.models import SignalValidationError
from rebalancer.services.telegram import telegram_from_settings
from rebalancer.signals.processor import process_signal
from rebalancer.signals.reports import TelegramReportSink, format_signal_summary_html

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Process a BUY/SELL signal without the webhook.')
    parser.add_argument('direction', choices=['BUY', 'SELL', 'buy', 'sell'])
    parser.add_argument('symbol')
    parser.add_argument('price', type=float)
    parser.add_argument('--message', default=None)
    parser.add_argument('--report', action='store_true', help='send reconciliation reports via Telegram')
    args = parser.parse_args()

    setup_logging()
    conn = get_conn(settings.db_path)
    migrate(conn)
    sink = None
    client = None
    if args.report:
        client = telegram_from_settings(settings)
        if client is None:
            sys.exit('Telegram is not configured (TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID)')
        sink = TelegramReportSink(conn, client)
    payload = {'symbol': args.symbol, 'direction': args.direction, 'price': args.price, 'message': args.message}
    try:
        result = process_signal(conn, payload, report_sink=sink)
    except SignalValidationError as e:
        sys.exit(f'Invalid signal: {e}')
    print('Tasks created:', result['tasks_created'], '| reports sent:', result['reports_sent'])
    for line in result['tasks']:
        print(' -', line)
    if client is not None:
        client.send_message_html_sync(format_signal_summary_html(args.direction, args.symbol, result))
