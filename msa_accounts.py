from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from colorama import init, Fore, Style

init(autoreset=True)

logger = logging.getLogger("msa_accounts")


class DirectoryError(Exception):
    pass


class AccountKind(Enum):
    MSA = "msa"
    GMSA = "gmsa"


@dataclass(frozen=True)
class ServiceAccount:
    name: str
    sam_account_name: str
    kind: AccountKind
    enabled: bool = True
    dns_host_name: Optional[str] = None
    principals: tuple[str, ...] = field(default_factory=tuple)


class DirectoryService(Protocol):
    def create_account(
        self,
        name: str,
        kind: AccountKind,
        dns_host_name: Optional[str] = None,
        principals: Sequence[str] = (),
        computer: Optional[str] = None,
    ) -> ServiceAccount: ...

    def bind_to_computer(self, account: str, computer: str) -> None: ...

    def list_accounts(self) -> list[ServiceAccount]: ...

    def verify_installation(self, account: str) -> bool: ...

    def remove_account(self, name: str) -> None: ...


CommandRunner = Callable[[list[str], int], "subprocess.CompletedProcess[str]"]


def _default_runner(cmd: list[str], timeout: int) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


_ACCOUNT_PROPERTIES = (
    "Name",
    "SamAccountName",
    "Enabled",
    "DNSHostName",
    "ObjectClass",
    "PrincipalsAllowedToRetrieveManagedPassword",
)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def account_from_json(data: dict) -> ServiceAccount:
    object_class = str(data.get("ObjectClass") or "").lower()
    kind = AccountKind.GMSA if object_class == "msds-groupmanagedserviceaccount" else AccountKind.MSA
    name = str(data.get("Name") or "")
    return ServiceAccount(
        name=name,
        sam_account_name=str(data.get("SamAccountName") or name + "$"),
        kind=kind,
        enabled=bool(data.get("Enabled", True)),
        dns_host_name=data.get("DNSHostName") or None,
        principals=tuple(str(p) for p in _as_list(data.get("PrincipalsAllowedToRetrieveManagedPassword"))),
    )


class PowerShellDirectory:
    """ActiveDirectory module cmdlets driven through powershell.exe."""

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: int = 120, executable: str = "powershell.exe"):
        self.runner = runner or _default_runner
        self.timeout = timeout
        self.executable = executable

    def _run_ps(self, script: str) -> str:
        cmd = [
            self.executable,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy", "Bypass",
            "-Command", f"Import-Module ActiveDirectory -ErrorAction Stop; {script}",
        ]
        logger.debug("PS> %s", script[:120] + ("..." if len(script) > 120 else ""))
        try:
            proc = self.runner(cmd, self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise DirectoryError(f"PowerShell command timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise DirectoryError(f"Cannot start {self.executable}: {exc}") from exc

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise DirectoryError(stderr or f"PowerShell exited with code {proc.returncode}")
        return (proc.stdout or "").strip()

    def _run_ps_json(self, script: str) -> Any:
        raw = self._run_ps(f"{script} | ConvertTo-Json -Depth 4 -Compress")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DirectoryError(f"Unexpected PowerShell output: {raw[:200]}") from exc

    def _get_account(self, name: str) -> ServiceAccount:
        data = self._run_ps_json(
            f"Get-ADServiceAccount -Identity {ps_quote(name)} -Properties {','.join(_ACCOUNT_PROPERTIES)} "
            f"| Select-Object {','.join(_ACCOUNT_PROPERTIES)}"
        )
        if not isinstance(data, dict):
            raise DirectoryError(f"Service account {name} not found")
        return account_from_json(data)

    def create_account(
        self,
        name: str,
        kind: AccountKind,
        dns_host_name: Optional[str] = None,
        principals: Sequence[str] = (),
        computer: Optional[str] = None,
    ) -> ServiceAccount:
        if not name:
            raise ValueError("account name must not be empty")

        parts = [f"New-ADServiceAccount -Name {ps_quote(name)}"]
        if kind is AccountKind.GMSA:
            if not dns_host_name:
                raise ValueError("a gMSA requires a DNS host name")
            parts.append(f"-DNSHostName {ps_quote(dns_host_name)}")
            if principals:
                parts.append("-PrincipalsAllowedToRetrieveManagedPassword " + ",".join(ps_quote(p) for p in principals))
        else:
            parts.append("-RestrictToSingleComputer")
        parts.append("-Enabled $true")
        self._run_ps(" ".join(parts))

        if computer:
            self.bind_to_computer(name, computer)
        return self._get_account(name)

    def bind_to_computer(self, account: str, computer: str) -> None:
        self._run_ps(
            f"Add-ADComputerServiceAccount -Identity {ps_quote(computer)} -ServiceAccount {ps_quote(account)}"
        )

    def list_accounts(self) -> list[ServiceAccount]:
        data = self._run_ps_json(
            f"Get-ADServiceAccount -Filter * -Properties {','.join(_ACCOUNT_PROPERTIES)} "
            f"| Select-Object {','.join(_ACCOUNT_PROPERTIES)}"
        )
        return [account_from_json(item) for item in _as_list(data) if isinstance(item, dict)]

    def verify_installation(self, account: str) -> bool:
        out = self._run_ps(f"Test-ADServiceAccount -Identity {ps_quote(account)}")
        return out.strip().lower() == "true"

    def remove_account(self, name: str) -> None:
        self._run_ps(f"Remove-ADServiceAccount -Identity {ps_quote(name)} -Confirm:$false")


def _print_account(account: ServiceAccount) -> None:
    state = f"{Fore.GREEN}enabled" if account.enabled else f"{Fore.YELLOW}disabled"
    print(f"  {Style.BRIGHT}{account.name}{Style.RESET_ALL} ({account.kind.value}, {account.sam_account_name}) {state}")
    if account.dns_host_name:
        print(f"       DNS host: {account.dns_host_name}")
    if account.principals:
        print(f"       Password readers: {', '.join(account.principals)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="msa-accounts",
        description="Create, bind, list, verify and remove (group) Managed Service Accounts.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create an MSA or gMSA")
    create.add_argument("name")
    create.add_argument("--kind", choices=[k.value for k in AccountKind], default=AccountKind.GMSA.value)
    create.add_argument("--dns-host-name", help="Required for gMSA")
    create.add_argument("--principal", action="append", default=[], help="Principal allowed to retrieve the password (gMSA)")
    create.add_argument("--computer", help="Bind the new account to this computer")

    bind = sub.add_parser("bind", help="Associate an account with a computer")
    bind.add_argument("name")
    bind.add_argument("computer")

    sub.add_parser("list", help="List service accounts")

    verify = sub.add_parser("verify", help="Test the account installation on this host")
    verify.add_argument("name")

    remove = sub.add_parser("remove", help="Delete a service account")
    remove.add_argument("name")
    return parser


def main(argv: Optional[Sequence[str]] = None, directory: Optional[DirectoryService] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    directory = directory or PowerShellDirectory()

    try:
        if args.command == "create":
            account = directory.create_account(
                args.name,
                AccountKind(args.kind),
                dns_host_name=args.dns_host_name,
                principals=args.principal,
                computer=args.computer,
            )
            print(f"{Fore.GREEN}[+] Created service account:")
            _print_account(account)
        elif args.command == "bind":
            directory.bind_to_computer(args.name, args.computer)
            print(f"{Fore.GREEN}[+] Bound {args.name} to {args.computer}")
        elif args.command == "list":
            accounts = directory.list_accounts()
            if not accounts:
                print(f"{Fore.YELLOW}[-] No service accounts found.")
            for account in accounts:
                _print_account(account)
        elif args.command == "verify":
            if not directory.verify_installation(args.name):
                print(f"{Fore.RED}[!] {args.name} is not usable on this host.", file=sys.stderr)
                return 1
            print(f"{Fore.GREEN}[+] {args.name} is installed and usable on this host.")
        elif args.command == "remove":
            directory.remove_account(args.name)
            print(f"{Fore.GREEN}[+] Removed {args.name}")
    except (DirectoryError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"{Fore.RED}[!] {exc}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
