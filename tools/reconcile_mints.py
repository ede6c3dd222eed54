import json, sys
from educhain import config
from educhain.db import Database
from educhain.ledger import get_ledger_client
from educhain.logging_config import configure_logging
from educhain.minting import MintBinder
from educhain.store import CertificateStore

def build_binder() -> MintBinder:
    db = Database(config.DB_PATH)
    db.init_schema()
    return MintBinder(db, CertificateStore(db), get_ledger_client(), config.MINT_RESERVATION_TTL)

def main(argv):
    configure_logging(config.LOG_LEVEL, config.LOG_JSON, config.LOG_FILE)
    binder = build_binder()
    if argv and argv[0] == "--release":
        if len(argv) != 2:
            print("Usage: python tools/reconcile_mints.py --release <certificate_id>"); return 2
        released = binder.release(argv[1])
        print(json.dumps({"certificateId": argv[1], "released": released}))
        return 0 if released else 1
    report = binder.reconcile()
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0

if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] not in ("--release",):
        print("Usage: python tools/reconcile_mints.py [--release <certificate_id>]"); raise SystemExit(2)
    raise SystemExit(main(sys.argv[1:]))
