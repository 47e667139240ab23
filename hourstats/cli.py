"""
CLI: Command Line Interface for hourstats

支援 init-config、run、start、tick、status、list-runs、purge 命令。
"""

import click
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from hourstats.config import HourStatsConfig
from hourstats.collectors.bluesky import build_client
from hourstats.collectors.parallel import ParallelCollector
from hourstats.coordinator import RunCoordinator
from hourstats.errors import HourStatsError, PublishFailed, RunNotFound
from hourstats.models import PipelineOutcome, RunSummary
from hourstats.processing.aggregate import Aggregator
from hourstats.processing.sentiment import VaderScorer
from hourstats.publishing.poster import BlueskyPublisher
from hourstats.storage.file_store import FileStore
from hourstats.storage.pg_store import PostgresStore
from hourstats.utils.hashing import schedule_token
from hourstats.utils.time import utcnow, to_local

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@click.group()
def cli():
    """Bluesky hourly sentiment stats CLI"""
    pass


@cli.command()
@click.option('--out', default='config.example.yaml', help='Output config file path')
def init_config(out: str):
    """產生範本設定檔"""

    # 讀取現有的 example config (如果存在)
    example_path = Path(__file__).parent.parent / 'config.example.yaml'

    if example_path.exists():
        with open(example_path, 'r', encoding='utf-8') as f:
            content = f.read()
    else:
        # Minimal fallback
        content = """# hourstats configuration
window_minutes: 30
top_n: 5
dry_run: true
storage:
  mode: "file"
  base_dir: "memory"
"""

    with open(out, 'w', encoding='utf-8') as f:
        f.write(content)

    click.echo(f"✓ Config file created: {out}")
    click.echo(f"  Edit this file and run: hourstats run --config {out}")


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--window-minutes', type=int, default=None, help='Override window length (minutes)')
@click.option('--dry-run', is_flag=True, default=False, help='Analyze only, do not publish')
@click.option('--token', default=None, help='Idempotency token for this run')
def run(config: str, window_minutes: Optional[int], dry_run: bool, token: Optional[str]):
    """執行一次完整 pipeline (collect → aggregate → publish)"""

    click.echo("=" * 60)
    click.echo("hourstats: Bluesky sentiment for the last window")
    click.echo("=" * 60)

    cfg = load_config(config)
    if dry_run:
        cfg.dry_run = True

    store = initialize_storage(cfg)
    client = None
    try:
        client = build_client_from_config(cfg)
        coordinator = build_coordinator(cfg, store, client)

        logger.info("=" * 40)
        logger.info("STEP 1: Collecting")
        logger.info("=" * 40)
        run_id = coordinator.start_run(window_minutes, token)
        click.echo(f"Run ID: {run_id}")

        try:
            outcome = coordinator.run_to_completion(run_id)
        except PublishFailed as e:
            logger.error(f"✗ Publish failed for {run_id}: {e}")
            click.echo(f"✗ Publish failed: {e}", err=True)
            print_summary(coordinator.get_run_summary(run_id), cfg.run_timezone)
            sys.exit(2)

        summary = coordinator.get_run_summary(run_id)
        export_path = write_summary_file(Path(cfg.output_dir), summary, outcome)
        click.echo(f"✓ Written summary to {export_path}")

        print_summary(summary, cfg.run_timezone)
        if outcome.summary_text:
            click.echo("\nPost text:")
            click.echo(outcome.summary_text)
        if outcome.published:
            click.echo(f"\n✓ Published: {outcome.post_uri}")

        if outcome.status == "failed":
            sys.exit(1)

    finally:
        if client is not None:
            client.close()
        store.close()


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--window-minutes', type=int, default=None, help='Override window length (minutes)')
@click.option('--token', default=None, help='Idempotency token (default: current schedule tick)')
def start(config: str, window_minutes: Optional[int], token: Optional[str]):
    """建立 run 並執行第一輪 collection (給 scheduler 用)"""
    cfg = load_config(config)
    window_minutes = window_minutes or cfg.window_minutes
    token = token or schedule_token(window_minutes, utcnow())

    store = initialize_storage(cfg)
    client = None
    try:
        client = build_client_from_config(cfg)
        coordinator = build_coordinator(cfg, store, client)
        run_id = coordinator.start_run(window_minutes, token)
        click.echo(run_id)
    finally:
        if client is not None:
            client.close()
        store.close()


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--run-id', required=True, help='Run ID')
def tick(config: str, run_id: str):
    """讓 run 前進一個 step"""
    cfg = load_config(config)
    store = initialize_storage(cfg)
    client = None
    try:
        client = build_client_from_config(cfg)
        coordinator = build_coordinator(cfg, store, client)

        run_record = coordinator.advance(run_id)
        click.echo(f"{run_record.run_id}: status={run_record.status}, stage={run_record.stage}, "
                   f"items={run_record.total_items_retrieved}")

        if run_record.is_terminal:
            outcome = coordinator.run_to_completion(run_id)
            if outcome.published:
                click.echo(f"✓ Published: {outcome.post_uri}")
    except RunNotFound as e:
        raise click.ClickException(str(e))
    finally:
        if client is not None:
            client.close()
        store.close()


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--run-id', required=True, help='Run ID')
@click.option('--json', 'as_json', is_flag=True, default=False, help='Print as JSON')
def status(config: str, run_id: str, as_json: bool):
    """顯示 run 摘要"""
    cfg = load_config(config)
    store = initialize_storage(cfg)
    try:
        coordinator = build_coordinator(cfg, store, client=None)
        summary = coordinator.get_run_summary(run_id)
    except RunNotFound as e:
        raise click.ClickException(str(e))
    finally:
        store.close()

    if as_json:
        click.echo(summary.model_dump_json(indent=2))
    else:
        print_summary(summary, cfg.run_timezone)


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
@click.option('--limit', type=int, default=10, help='Number of runs')
@click.option('--details', is_flag=True, default=False, help='Show status of each run')
def list_runs(config: str, limit: int, details: bool):
    """列出最近的 runs (診斷用)"""
    cfg = load_config(config)
    store = initialize_storage(cfg)
    try:
        coordinator = build_coordinator(cfg, store, client=None)
        run_ids = coordinator.list_recent_runs(limit)

        if not run_ids:
            click.echo("No runs found")
            return

        for run_id in run_ids:
            if not details:
                click.echo(run_id)
                continue

            summary = coordinator.get_run_summary(run_id)
            mood = summary.aggregate_sentiment.mood_label if summary.aggregate_sentiment else "-"
            click.echo(f"{run_id}  {summary.status:<9} {summary.stage:<11} "
                       f"items={summary.item_count:<6} mood={mood}")
    finally:
        store.close()


@cli.command()
@click.option('--config', required=True, help='Config YAML file path')
def purge(config: str):
    """刪除超過保留時間的 runs"""
    cfg = load_config(config)
    store = initialize_storage(cfg)
    try:
        purged = store.purge_expired()
    finally:
        store.close()
    click.echo(f"✓ Purged {purged} expired runs")


def load_config(config_path: str) -> HourStatsConfig:
    """讀取設定 (每個 invocation 只讀一次)"""
    logger.info(f"Loading config: {config_path}")
    return HourStatsConfig.from_yaml(config_path)


def initialize_storage(cfg: HourStatsConfig):
    """初始化儲存後端（fail fast，不 fallback）"""
    storage = cfg.storage

    if storage.mode == "postgres":
        dsn = cfg.get_postgres_dsn()
        if not dsn:
            raise ValueError(
                f"Postgres mode requires the {storage.postgres_dsn_env or 'storage.postgres_dsn_env'} environment variable"
            )

        # 連線失敗直接拋出異常（不 fallback）
        logger.info("Initializing Postgres storage...")
        return PostgresStore(
            dsn,
            auto_init_schema=True,
            retention_hours=storage.retention_hours,
            retry_attempts=storage.retry_attempts,
            retry_backoff_seconds=storage.retry_backoff_seconds
        )

    elif storage.mode == "file":
        logger.info("Using file storage backend")
        return FileStore(
            storage.base_dir,
            retention_hours=storage.retention_hours,
            retry_attempts=storage.retry_attempts,
            retry_backoff_seconds=storage.retry_backoff_seconds
        )

    else:
        raise ValueError(f"Unsupported storage mode: {storage.mode}")


def build_client_from_config(cfg: HourStatsConfig):
    """建立 Bluesky client；沒有 credentials 時以匿名方式搜尋"""
    handle, password = cfg.get_bluesky_credentials()
    if not (handle and password):
        logger.info("No Bluesky credentials configured, searching anonymously")
    try:
        return build_client(cfg.bluesky, handle, password)
    except HourStatsError as e:
        raise click.ClickException(f"Bluesky login failed: {e}")


def build_coordinator(cfg: HourStatsConfig, store, client) -> RunCoordinator:
    """組合 collector / aggregator / publisher"""
    collector = ParallelCollector(client, store, cfg.collector, query=cfg.bluesky.query)
    aggregator = Aggregator(store, VaderScorer(), cfg)

    publisher = None
    if client is not None and client.is_authenticated and not cfg.dry_run:
        publisher = BlueskyPublisher(client)

    return RunCoordinator(store, collector, aggregator, cfg, publisher=publisher)


def print_summary(summary: RunSummary, tz_name: str = "UTC"):
    """輸出 run 摘要"""
    click.echo("\n" + "=" * 60)
    click.echo("RUN SUMMARY")
    click.echo("=" * 60)
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Window: {to_local(summary.window_start, tz_name):%Y-%m-%d %H:%M} -> "
               f"{to_local(summary.window_end, tz_name):%Y-%m-%d %H:%M} ({tz_name})")
    click.echo(f"Status: {summary.status} (stage={summary.stage})")
    click.echo(f"Retrieved: {summary.item_count} items")
    if summary.stop_reason:
        click.echo(f"Stop reason: {summary.stop_reason}")
    if summary.error_message:
        click.echo(f"Error: {summary.error_message}")

    if summary.outcome == "no_items_in_window":
        click.echo("\nQuiet period: no posts in window")
        return

    sentiment = summary.aggregate_sentiment
    if sentiment:
        click.echo(f"Analyzed: {sentiment.item_count} items")
        click.echo(f"Sentiment: {sentiment.category} ({sentiment.net_sentiment_percent:+.1f}%), "
                   f"mood=#{sentiment.mood_label}")

    if summary.top_items:
        click.echo(f"\nTop {len(summary.top_items)} Posts:")
        for i, item in enumerate(summary.top_items, 1):
            click.echo(f"  {i}. @{item.author_handle} engagement={item.engagement_score}, "
                       f"sentiment={item.sentiment_category}")


def write_summary_file(output_dir: Path, summary: RunSummary, outcome: PipelineOutcome) -> Path:
    """寫入 run summary JSON"""
    output_dir.mkdir(parents=True, exist_ok=True)
    summary_file = output_dir / f"{summary.run_id}.json"

    data = summary.model_dump(mode='json')
    data['summary_text'] = outcome.summary_text
    data['published'] = outcome.published

    with open(summary_file, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    logger.info(f"Written: {summary_file}")
    return summary_file


if __name__ == "__main__":
    cli()
