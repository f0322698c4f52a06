import argparse
import asyncio
import json
import os
import sys
from typing import Any

from core.config import ConfigAccessor, load_config
from storage.strikes import StrikeLedger


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _strike_path() -> str:
    explicit = _env('STRIKE_FILE_PATH', None)
    if explicit:
        return explicit
    return ConfigAccessor(load_config()).strikes_path()


def cmd_run(args):
    import cleaner

    asyncio.run(cleaner.main(once=args.once, config_path=args.config))


def cmd_list(args):
    ledger = StrikeLedger(_strike_path())
    records = {k: r.to_dict() for k, r in ledger.get_all_records().items()}
    print(json.dumps(records, indent=2))


def cmd_clear(args):
    ledger = StrikeLedger(_strike_path())
    if args.id:
        if ledger.get(args.id) > 0:
            ledger.reset(args.id)
            ledger.save()
            print(f"Cleared {args.id}")
        else:
            print("Id not found")
    else:
        ledger.clear()
        ledger.save()
        print("Cleared all strikes")


def cmd_status(args):
    cfg = ConfigAccessor(load_config())
    ledger = StrikeLedger(_strike_path())
    records = ledger.get_all_records()
    by_job = {}
    for record in records.values():
        by_job[record.job] = by_job.get(record.job, 0) + 1
    enabled = [name for name, jcfg in (cfg.cfg.get('jobs') or {}).items() if jcfg.get('enabled')]
    print(
        json.dumps(
            {
                "strike_file": _strike_path(),
                "tracked": len(records),
                "by_job": by_job,
                "enabled_jobs": enabled,
                "test_run": bool(cfg.general('test_run')),
                "timer": cfg.general('timer'),
            },
            indent=2,
        )
    )


def main():
    ap = argparse.ArgumentParser(description="arr-declutter queue cleaner")
    sub = ap.add_subparsers(dest='cmd')

    p_run = sub.add_parser('run', help='Run the cleaner loop')
    p_run.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    p_run.add_argument('--config', help='Path to config.yaml (default: DECLUTARR_CONFIG or ./config.yaml)')
    p_run.set_defaults(func=cmd_run)

    p_strikes = sub.add_parser('strikes', help='Inspect or clear strike records')
    strikes_sub = p_strikes.add_subparsers(dest='strikes_cmd')
    p_list = strikes_sub.add_parser('list', help='List strike records')
    p_list.set_defaults(func=cmd_list)
    p_clear = strikes_sub.add_parser('clear', help='Clear strikes (all or one download id)')
    p_clear.add_argument('--id', help='Download id to clear')
    p_clear.set_defaults(func=cmd_clear)

    p_status = sub.add_parser('status', help='Show strike summary and configured jobs')
    p_status.set_defaults(func=cmd_status)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()
