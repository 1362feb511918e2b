#!/usr/bin/env python3
# tone_drafter/services/key_rotation.py
"""
Bulk-Rotation des Master-Keys

Alle verschlüsselten Secrets (Postfach-Passwörter, Provider-API-Keys)
werden mit der getaggten Key-Version entschlüsselt und mit der aktuellen
Version neu verschlüsselt, in EINER Transaktion. Blobs, die bereits die
aktuelle Version tragen, werden übersprungen.

Verwendung:
    DRAFT_MASTER_KEY=<neu> DRAFT_MASTER_KEY_VERSION=2 DRAFT_MASTER_KEY_V1=<alt> \\
        python -m tone_drafter.services.key_rotation
    python -m tone_drafter.services.key_rotation --dry-run
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List

from tone_drafter import config
from tone_drafter.encryption import KeyRing, reencrypt
from tone_drafter.exceptions import DecryptionError
from tone_drafter.models import EmailAccount, LlmProviderConfig

logger = logging.getLogger(__name__)

ENCRYPTED_COLUMNS = (
    (EmailAccount, "encrypted_password"),
    (LlmProviderConfig, "encrypted_api_key"),
)


@dataclass
class RotationReport:
    rotated: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def rotate_all(session, keyring: KeyRing, dry_run: bool = False) -> RotationReport:
    """Re-encrypt aller Secrets auf die aktuelle Key-Version

    Schlägt ein einziges Secret fehl, wird nichts geschrieben.
    """
    if not keyring.has_current_key:
        raise ValueError(f"Kein Master-Key für aktuelle Version {keyring.current_version}")

    report = RotationReport()
    for model, column in ENCRYPTED_COLUMNS:
        for row in session.query(model).filter(getattr(model, column).isnot(None)).all():
            blob = getattr(row, column)
            try:
                if not keyring.needs_rotation(blob):
                    report.skipped += 1
                    continue
                new_blob = reencrypt(blob, keyring)
            except DecryptionError as e:
                report.failed.append(f"{model.__tablename__}#{row.id}: {e}")
                continue
            if not dry_run:
                setattr(row, column, new_blob)
            report.rotated += 1

    if report.failed or dry_run:
        session.rollback()
        if report.failed:
            logger.error(f"❌ Rotation abgebrochen, {len(report.failed)} Secrets nicht entschlüsselbar")
    else:
        session.commit()
        logger.info(f"🔑 Rotation auf Version {keyring.current_version}: {report.rotated} neu, {report.skipped} aktuell")
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Master-Key-Rotation für gespeicherte Secrets")
    parser.add_argument("--dry-run", action="store_true", help="Nur zählen, nichts schreiben")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config.load_environment()

    from tone_drafter.helpers.database import get_db_session

    keyring = KeyRing.from_env()
    with get_db_session() as db:
        report = rotate_all(db, keyring, dry_run=args.dry_run)

    print(f"Rotiert: {report.rotated}  Übersprungen: {report.skipped}  Fehler: {len(report.failed)}")
    for failure in report.failed:
        print(f"  ❌ {failure}")
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
