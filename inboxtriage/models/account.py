"""Account dataclass — one IMAP mailbox this installation triages."""
from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from inboxtriage import config


class Credential(NamedTuple):
    username: str
    secret: str


@dataclass
class Account:
    address: str = ""
    host: str = config.DEFAULT_IMAP_HOST
    port: int = config.DEFAULT_IMAP_PORT
    use_ssl: bool = True
    mailbox: str = config.DEFAULT_MAILBOX

    def __str__(self) -> str:
        return f"{self.address} <{self.host}/{self.mailbox}>"
