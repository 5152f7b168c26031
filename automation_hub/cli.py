"""
Command-line interface for automation-hub.

CLI Structure:
    automation-hub run                 # monitor the mailbox and serve webhooks
    automation-hub check               # run a single mailbox tick
    automation-hub validate-config     # load config and list processors/webhooks
    automation-hub extract -p NAME FILE
"""
import logging
import signal
import sys
import threading
from pathlib import Path

import click
import uvicorn

from automation_hub import __version__
from automation_hub.config import ConfigError, load_config
from automation_hub.logging_config import init_logging
from automation_hub.models import Email
from automation_hub.monitor import EmailMonitor
from automation_hub.processors import MARK_AS_READ_PROCESSORS, ProcessorRegistry
from automation_hub.runtime import AppContext, build_app_context
from automation_hub.webhook import create_webhook_app

logger = logging.getLogger(__name__)

MONITOR_JOIN_TIMEOUT = 30


@click.group()
@click.version_option(version=__version__, prog_name='automation-hub')
@click.option(
    '--config',
    type=click.Path(path_type=Path),
    default='config/config.yaml',
    help='Path to YAML configuration file (default: config/config.yaml)'
)
@click.option(
    '--env',
    type=click.Path(path_type=Path),
    default='.env',
    help='Path to .env secrets file (default: .env)'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default=None,
    help='Override the configured log level'
)
@click.pass_context
def cli(ctx: click.Context, config: Path, env: Path, log_level: str):
    """
    automation-hub: relay verification codes from email and webhook
    notifications to Telegram.
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = str(config)
    ctx.obj['env_path'] = str(env)
    ctx.obj['log_level'] = log_level.upper() if log_level else None
    init_logging(overrides={'level': ctx.obj['log_level']})


def _load_context(ctx: click.Context) -> AppContext:
    """Build the application context or exit with a configuration error."""
    try:
        context = build_app_context(ctx.obj['config_path'], ctx.obj['env_path'])
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    logging_config = context.config.logging
    init_logging(overrides={
        'level': ctx.obj['log_level'] or logging_config.level,
        'format': logging_config.format,
        'file': logging_config.file,
    })
    return context


@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """Monitor the mailbox and serve webhooks until interrupted."""
    context = _load_context(ctx)
    stop_event = threading.Event()
    monitor = EmailMonitor(context)
    monitor_thread = threading.Thread(target=monitor.run, args=(stop_event,), name='email-monitor', daemon=True)
    monitor_thread.start()

    server_config = context.config.server
    try:
        if server_config.enabled:
            app = create_webhook_app(context)
            logger.info(f"Starting webhook server on {server_config.host}:{server_config.port}")
            # uvicorn installs its own SIGINT/SIGTERM handlers and returns on shutdown
            uvicorn.run(app, host=server_config.host, port=server_config.port, log_config=None)
        else:
            signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
            try:
                while not stop_event.wait(1):
                    pass
            except KeyboardInterrupt:
                logger.warning("Interrupted by user")
    finally:
        logger.info("Shutting down...")
        stop_event.set()
        monitor_thread.join(timeout=MONITOR_JOIN_TIMEOUT)
        if monitor_thread.is_alive():
            logger.warning("Email monitor did not stop within the timeout")
        logger.info("Shutdown complete")


@cli.command()
@click.pass_context
def check(ctx: click.Context):
    """Run a single mailbox check and print the counters."""
    context = _load_context(ctx)
    result = EmailMonitor(context).check_emails()
    click.echo(result.summary())
    if result.aborted:
        sys.exit(1)


@cli.command('validate-config')
@click.pass_context
def validate_config(ctx: click.Context):
    """Load the configuration and list processors and webhooks."""
    context = _load_context(ctx)
    email_config = context.config.email

    click.echo(f"Mailbox: {email_config.username}@{email_config.host}:{email_config.port} ({email_config.mailbox})")
    click.echo(f"Polling interval: {email_config.polling_interval}s")
    click.echo(f"Processors ({len(context.registry)}):")
    for processor in context.registry:
        marks_read = 'yes' if processor.name.lower() in MARK_AS_READ_PROCESSORS else 'no'
        click.echo(
            f"  - {processor.name}: from={processor.sender!r} subjects={processor.config.email_subject} "
            f"pattern={processor.pattern.pattern!r} strategy={processor.strategy.value} mark_read={marks_read}"
        )
    click.echo(f"Webhooks ({len(context.webhooks)}):")
    for hook in context.webhooks:
        click.echo(f"  - {hook.name}: POST {hook.path} -> chat {hook.config.telegram_chat_id}")


@cli.command()
@click.option('--processor', '-p', 'processor_name', required=True, help='Processor name from the configuration')
@click.argument('message_file', type=click.File('r', encoding='utf-8'))
@click.pass_context
def extract(ctx: click.Context, processor_name: str, message_file):
    """Print the code a processor would extract from a saved message body."""
    try:
        config = load_config(ctx.obj['config_path'], ctx.obj['env_path'])
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    # No notifier: extraction only, nothing is sent
    registry = ProcessorRegistry.from_config(config.email.services, telegram=None)
    processor = registry.get(processor_name)
    if processor is None:
        click.echo(f"Unknown processor: {processor_name}", err=True)
        sys.exit(1)

    email = Email(uid='0', subject='', sender='', text_plain=message_file.read())
    click.echo(processor.extract(email))
