"""Exchange Online helpers driven through PowerShell.

Distribution lists and shared mailbox permissions cannot be managed through
Microsoft Graph, so these operations shell out to the ExchangeOnlineManagement
module using certificate-based app-only authentication.
"""
from __future__ import annotations

import os
import subprocess
from typing import List, Optional

from .config import ExchangeConfig

_SUCCESS_MARKER = "SUCCESS"
_MAILBOX_MARKER = "MAILBOX:"


class ExchangeError(RuntimeError):
    """Raised when an Exchange Online PowerShell command fails."""


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class ExchangeOnlineClient:
    def __init__(self, config: ExchangeConfig, organization: Optional[str] = None) -> None:
        if not config.has_credentials:
            raise ExchangeError(
                "Exchange Online is not configured. "
                "Provide organization, certificate_thumbprint, and app_id."
            )
        self._config = config
        self.organization = organization or config.organization

    def _script(self, body: str) -> str:
        return f"""$ErrorActionPreference = 'Stop'
Import-Module ExchangeOnlineManagement -ErrorAction Stop
try {{
    Connect-ExchangeOnline -AppId {_quote(self._config.app_id)} -CertificateThumbprint {_quote(self._config.certificate_thumbprint)} -Organization {_quote(self.organization)} -ShowBanner:$false -ErrorAction Stop
{body}
}} catch {{
    Write-Error $_.Exception.Message
    exit 1
}} finally {{
    try {{ Disconnect-ExchangeOnline -Confirm:$false -ErrorAction SilentlyContinue }} catch {{}}
}}"""

    def _run(self, body: str) -> str:
        env = os.environ.copy()
        env.pop("PSModulePath", None)
        try:
            result = subprocess.run(
                [self._config.powershell_path, "-NoProfile", "-NonInteractive", "-Command", self._script(body)],
                capture_output=True,
                text=True,
                timeout=self._config.timeout,
                env=env,
            )
        except FileNotFoundError as exc:
            raise ExchangeError(f"PowerShell executable not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExchangeError("Exchange Online command timed out.") from exc

        if result.returncode != 0:
            error_msg = result.stderr.strip() or result.stdout.strip() or "Unknown error"
            raise ExchangeError(f"Exchange command failed: {error_msg}")
        return result.stdout

    def add_distribution_group_member(self, group: str, member: str) -> None:
        output = self._run(
            f"""    try {{
        Add-DistributionGroupMember -Identity {_quote(group)} -Member {_quote(member)} -BypassSecurityGroupManagerCheck -ErrorAction Stop
    }} catch {{
        if ($_.Exception.Message -notlike '*already a member*') {{ throw }}
    }}
    Write-Output '{_SUCCESS_MARKER}'"""
        )
        if _SUCCESS_MARKER not in output:
            raise ExchangeError(f"Unable to add {member} to distribution group {group}.")

    def add_shared_mailbox_access(self, mailbox: str, user: str) -> None:
        output = self._run(
            f"""    Add-MailboxPermission -Identity {_quote(mailbox)} -User {_quote(user)} -AccessRights FullAccess -InheritanceType All -AutoMapping $true -ErrorAction Stop | Out-Null
    Add-RecipientPermission -Identity {_quote(mailbox)} -Trustee {_quote(user)} -AccessRights SendAs -Confirm:$false -ErrorAction Stop | Out-Null
    Write-Output '{_SUCCESS_MARKER}'"""
        )
        if _SUCCESS_MARKER not in output:
            raise ExchangeError(f"Unable to grant {user} access to shared mailbox {mailbox}.")

    def list_shared_mailbox_access(self, user: str) -> List[str]:
        """Return the shared mailboxes ``user`` holds FullAccess on."""

        output = self._run(
            f"""    Get-EXOMailbox -RecipientTypeDetails SharedMailbox -ResultSize Unlimited |
        Get-EXOMailboxPermission -User {_quote(user)} -ErrorAction SilentlyContinue |
        Where-Object {{ $_.AccessRights -contains 'FullAccess' }} |
        ForEach-Object {{ Write-Output ('{_MAILBOX_MARKER}' + $_.Identity) }}
    Write-Output '{_SUCCESS_MARKER}'"""
        )
        mailboxes: List[str] = []
        for line in output.splitlines():
            line = line.strip()
            if line.startswith(_MAILBOX_MARKER):
                name = line[len(_MAILBOX_MARKER) :].strip()
                if name and name not in mailboxes:
                    mailboxes.append(name)
        return mailboxes


__all__ = ["ExchangeError", "ExchangeOnlineClient"]
