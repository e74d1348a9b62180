"""Transaction submission strategies.

Both strategies satisfy ``Submitter`` so the engine never knows which one a
deployment uses:

- ``LocalSigningSubmitter`` lets the node assemble the transaction, signs its
  hash with the issuer key and sends the signature back.
- ``DelegatedSubmitter`` hands the parameters to an external tool (e.g. a
  multisig cosigner) that owns the key.
"""

import asyncio
import logging
from typing import Any, Protocol

import fundbridge.constants as C
from fundbridge.chain import ChainClient
from fundbridge.errors import ConfigError, SubmissionRejected
from fundbridge.keys import IssuerKey
from fundbridge.models import AccountCreateTx, FundsTransferTx, SignedTransaction, UnsignedTx

log = logging.getLogger("fundbridge.submitter")


class Submitter(Protocol):
    async def submit(self, tx: UnsignedTx) -> str: ...


class LocalSigningSubmitter:
    def __init__(self, chain: ChainClient, key: IssuerKey) -> None:
        self.chain = chain
        self.key = key

    async def submit(self, tx: UnsignedTx) -> str:
        tx_hash = await self.chain.create_tx(tx)
        signed = SignedTransaction(hash=tx_hash, signature=self.key.sign(tx_hash), kind=tx.kind)
        await self.chain.send_tx(signed)
        log.info("Submitted %s", signed)
        return tx_hash.hex()


def delegated_args(tx: UnsignedTx) -> list[str]:
    match tx:
        case AccountCreateTx():
            return [
                "account", "create",
                "--header", str(tx.header),
                "--fee", str(tx.fee),
                "--issuer", tx.issuer.hex(),
                "--address", tx.target.hex(),
            ]
        case FundsTransferTx():
            return [
                "funds",
                "--header", str(tx.header),
                "--amount", str(tx.amount),
                "--fee", str(tx.fee),
                "--txcount", str(tx.nonce),
                "--from", tx.source.hex(),
                "--to", tx.target.hex(),
            ]
        case _:
            raise TypeError(f"unknown transaction {tx!r}")


class DelegatedSubmitter:
    def __init__(self, command: list[str], *, timeout: float = C.SUBMIT_TIMEOUT) -> None:
        if not command:
            raise ConfigError("delegated submitter needs a command")
        self.command = list(command)
        self.timeout = timeout

    async def submit(self, tx: UnsignedTx) -> str:
        argv = [*self.command, *delegated_args(tx)]
        log.debug("Running %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SubmissionRejected(f"Could not start {self.command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SubmissionRejected(f"{self.command[0]} timed out after {self.timeout}s") from None

        if proc.returncode != 0:
            err = stderr.decode(errors="replace").strip().splitlines()
            raise SubmissionRejected(
                f"{self.command[0]} exited with {proc.returncode}: {err[-1] if err else 'no output'}",
                code=proc.returncode,
            )

        lines = [ln.strip() for ln in stdout.decode(errors="replace").splitlines() if ln.strip()]
        if not lines:
            raise SubmissionRejected(f"{self.command[0]} produced no output")
        log.info("Delegated %s: %s", tx.kind, lines[-1])
        return lines[-1]


def build_submitter(cfg: dict[str, Any], chain: ChainClient, key: IssuerKey) -> Submitter:
    sub = cfg["submitter"]
    match sub["mode"]:
        case "local":
            return LocalSigningSubmitter(chain, key)
        case "delegated":
            return DelegatedSubmitter(sub["command"], timeout=sub.get("timeout", C.SUBMIT_TIMEOUT))
        case other:
            raise ConfigError(f"unknown submitter mode {other!r}")
