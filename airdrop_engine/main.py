import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from tqdm.contrib.logging import logging_redirect_tqdm

from airdrop_engine.config import AppConfig, load_env
from airdrop_engine.core.log import setup_logging
from airdrop_engine.adapters.identity_http import HttpIdentityResolver, NullIdentityResolver
from airdrop_engine.adapters.multicall import MulticallClient
from airdrop_engine.adapters.node_pool import Web3NodePool
from airdrop_engine.adapters.web3_gateway import Web3ChainGateway
from airdrop_engine.errors import AirdropError
from airdrop_engine.models import AirdropStatus
from airdrop_engine.repositories.airdrops_fs import FileAirdropRepository
from airdrop_engine.repositories.excludes_file import FileExcludesRepository
from airdrop_engine.repositories.holders_fs import FileHolderCache
from airdrop_engine.repositories.wallets_fs import FileWalletCache
from airdrop_engine.services.executor import DistributionExecutor
from airdrop_engine.services.export import plan_rows, write_plan_csv
from airdrop_engine.services.holders import HolderDiscoveryService, CachedHolderDiscovery
from airdrop_engine.services.lifecycle import AirdropLifecycle
from airdrop_engine.services.recipients import RecipientResolver, CachedIdentityResolver
from airdrop_engine.utils.rate_limiter import RateLimiter

log = logging.getLogger("main")


@dataclass
class Engine:
    lifecycle: AirdropLifecycle
    holders: CachedHolderDiscovery
    node_pool: Web3NodePool


def build_engine(cfg: AppConfig) -> Engine:
    base = Path(cfg.data_dir)
    base.mkdir(parents=True, exist_ok=True)

    urls = [cfg.rpc_url] + list(cfg.rpc_pool or [])
    node_pool = Web3NodePool(urls, request_timeout=cfg.call_timeout)
    gateway = Web3ChainGateway(
        node_pool=node_pool,
        limiter=RateLimiter(cfg.rps),
        multicall=MulticallClient(cfg.multicall_address),
        retries=cfg.max_retries,
        base_delay=cfg.retry_base_delay,
        call_timeout=cfg.call_timeout,
        signer_key=cfg.treasury_private_key,
        chain_id=cfg.chain_id,
    )

    discovery = HolderDiscoveryService(
        chain=gateway,
        batch_size=cfg.holder_batch_size,
        timeout=cfg.holder_timeout,
        retries=cfg.holder_retries,
        retry_delay=cfg.holder_retry_delay,
        logs_chunk=cfg.logs_chunk,
        logs_max_retries=cfg.logs_max_retries,
        show_progress=cfg.show_progress,
    )
    holders = CachedHolderDiscovery(discovery, FileHolderCache(base), ttl=cfg.holder_cache_ttl)

    upstream = (HttpIdentityResolver(cfg.identity_resolver_url, timeout=cfg.call_timeout)
                if cfg.identity_resolver_url else NullIdentityResolver())
    resolver = RecipientResolver(
        identity_resolver=CachedIdentityResolver(upstream, FileWalletCache(base / "wallets.json")),
        treasury_address=cfg.treasury_address,
        bot_id=cfg.bot_id,
        excludes_repo=FileExcludesRepository(base / cfg.excludes_file),
    )
    executor = DistributionExecutor(
        writer=gateway,
        treasury_address=cfg.treasury_address,
        retries=cfg.distribute_retries,
        retry_delay=cfg.distribute_retry_delay,
        receipt_timeout=cfg.receipt_timeout,
    )
    lifecycle = AirdropLifecycle(
        repo=FileAirdropRepository(base),
        chain=gateway,
        holders=holders,
        resolver=resolver,
        executor=executor,
        treasury_address=cfg.treasury_address,
        admin_tax_address=cfg.admin_tax_address,
        tax_nft_address=cfg.tax_nft_address,
        default_tax_percent=cfg.tax_percent,
        default_admin_tax_percent=cfg.admin_tax_percent,
        batch_size=cfg.batch_size,
        join_grace_delay=cfg.join_grace_delay,
    )
    return Engine(lifecycle=lifecycle, holders=holders, node_pool=node_pool)


async def run(cfg: AppConfig, args: argparse.Namespace) -> int:
    engine = build_engine(cfg)
    lifecycle = engine.lifecycle
    try:
        if args.command == "holders":
            found = await engine.holders.discover_holders(args.contract, refresh=args.refresh)
            for h in sorted(found):
                print(h)
            log.info("Holders of %s: %d", args.contract, len(found))
        elif args.command == "status":
            airdrop = await lifecycle.get(args.airdrop_id)
            print(json.dumps(airdrop.to_dict(), indent=2))
        elif args.command == "distribute":
            airdrop = await lifecycle.get(args.airdrop_id)
            if airdrop.status == AirdropStatus.DISTRIBUTING:
                await lifecycle.resume(args.airdrop_id)
            else:
                await lifecycle.launch(args.airdrop_id)
            await lifecycle.wait_idle()
            airdrop = await lifecycle.get(args.airdrop_id)
            log.info("Airdrop %s is %s (last error: %s)", airdrop.id, airdrop.status.value, airdrop.last_error)
            return 0 if airdrop.status == AirdropStatus.COMPLETED else 1
        elif args.command == "plan":
            airdrop = await lifecycle.get(args.airdrop_id)
            rows = plan_rows(airdrop, cfg.batch_size, cfg.admin_tax_address)
            out = Path(args.out or f"plan_{airdrop.id}.csv")
            log.info("Saved: %s (%d transfers)", write_plan_csv(rows, out), len(rows))
    except AirdropError as e:
        log.error("%s", e)
        return 2
    finally:
        await engine.node_pool.aclose()
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="NFT-holder airdrop engine operator tools")
    sub = p.add_subparsers(dest="command", required=True)

    h = sub.add_parser("holders", help="discover the current holders of an NFT collection")
    h.add_argument("contract")
    h.add_argument("--refresh", action="store_true", help="ignore the holder cache")

    s = sub.add_parser("status", help="print an airdrop record")
    s.add_argument("airdrop_id")

    d = sub.add_parser("distribute", help="launch (or resume) the payout of an airdrop and wait for it")
    d.add_argument("airdrop_id")

    pl = sub.add_parser("plan", help="export the batch plan of an airdrop as CSV")
    pl.add_argument("airdrop_id")
    pl.add_argument("--out")
    return p.parse_args(argv)


def cli(argv=None) -> int:
    args = parse_args(argv)
    cfg = load_env()
    setup_logging(cfg.debug, cfg.log_file or None)
    with logging_redirect_tqdm():
        return asyncio.run(run(cfg, args))


if __name__ == "__main__":
    sys.exit(cli())
