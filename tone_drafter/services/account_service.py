# tone_drafter/services/account_service.py
"""
Verbundene Postfächer: anlegen, deaktivieren, Zugangsdaten entschlüsseln
"""

import logging
from typing import Optional

from tone_drafter.encryption import CredentialManager, KeyRing
from tone_drafter.exceptions import EntityNotFound
from tone_drafter.helpers.database import get_email_account
from tone_drafter.job_queue import JobQueue
from tone_drafter.models import EmailAccount, utcnow

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, keyring: KeyRing, job_queue: Optional[JobQueue] = None):
        self.keyring = keyring
        self.job_queue = job_queue

    def link_account(
        self,
        session,
        user_id: int,
        email_address: str,
        transport_host: str,
        transport_username: str,
        password: str,
        transport_port: int = 993,
    ) -> EmailAccount:
        """Legt das Postfach an; das Transport-Passwort wird nur verschlüsselt gespeichert"""
        account = EmailAccount(
            user_id=user_id,
            email_address=email_address.strip().lower(),
            transport_host=transport_host,
            transport_port=transport_port,
            transport_username=transport_username,
            encrypted_password=CredentialManager.encrypt_mailbox_password(password, self.keyring),
            is_active=True,
        )
        session.add(account)
        session.commit()
        logger.info(f"✅ Account {account.id} ({account.email_address}) für User {user_id} verbunden")
        return account

    def get_account(self, session, user_id: int, account_id: int) -> EmailAccount:
        account = get_email_account(session, account_id, user_id)
        if not account:
            raise EntityNotFound(f"Account {account_id} nicht gefunden oder gehört anderem User")
        return account

    def deactivate(self, session, user_id: int, account_id: int) -> int:
        """Deaktiviert (kein Hard-Delete) und bricht wartende Jobs ab

        Returns:
            Anzahl abgebrochener Jobs
        """
        account = self.get_account(session, user_id, account_id)
        account.is_active = False
        session.commit()

        cancelled = self.job_queue.cancel_for_account(session, account_id) if self.job_queue else 0
        logger.info(f"🔕 Account {account_id} deaktiviert, {cancelled} Jobs abgebrochen")
        return cancelled

    def decrypt_credentials(self, account: EmailAccount) -> str:
        """Transport-Passwort im Klartext (nie loggen!)"""
        return CredentialManager.decrypt_mailbox_password(account.encrypted_password, self.keyring)

    def mark_synced(self, session, account: EmailAccount) -> None:
        account.last_sync_at = utcnow()
        session.commit()
