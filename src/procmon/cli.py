"""CLI commands for procmon."""

import sys
from pathlib import Path

import click

DEFAULT_METRICS = ("time:cpu-raw+ratio", "mem:rss", "mem:vm")

FILTER_CHOICES = ["none", "user", "active", "owned"]


@click.command()
@click.argument("metrics", nargs=-1)
@click.option("-p", "--pid", "pids", type=int, multiple=True, help="Process id to monitor")
@click.option(
    "--pid-file",
    "pid_files",
    type=click.Path(dir_okay=False, path_type=Path),
    multiple=True,
    help="File holding the id of a process to monitor, read again on every tick",
)
@click.option("-n", "--name", "names", multiple=True, help="Glob on the process name")
@click.option("-e", "--every", type=float, help="Seconds between ticks")
@click.option("-c", "--count", type=click.IntRange(min=1), help="Number of ticks before exit")
@click.option(
    "-d", "--display", type=click.Choice(["any", "term", "text", "none"]), help="Display mode"
)
@click.option("-f", "--format", "fmt", type=click.Choice(["human", "raw"]), help="Value format")
@click.option("-F", "--filter", "process_filter", type=click.Choice(FILTER_CHOICES),
              help="Initial process filter of the dashboard")
@click.option("-x", "--export-type", type=click.Choice(["none", "csv", "tsv"]), help="Export kind")
@click.option("--export-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Directory of the exported files")
@click.option("--export-size", type=click.IntRange(min=1), help="Bytes per file before rotation")
@click.option("--export-count", type=click.IntRange(min=0), help="Rotated files kept per process")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              help="Configuration file")
@click.option("-v", "--verbose", is_flag=True, help="Log debug events")
@click.option("-l", "--list-metrics", is_flag=True, help="List the available metrics and exit")
@click.option("--write-config", is_flag=True,
              help="Save the options given with this command to the configuration file and exit")
@click.version_option(package_name="procmon")
def main(
    metrics: tuple[str, ...],
    pids: tuple[int, ...],
    pid_files: tuple[Path, ...],
    names: tuple[str, ...],
    every: float | None,
    count: int | None,
    display: str | None,
    fmt: str | None,
    process_filter: str | None,
    export_type: str | None,
    export_dir: Path | None,
    export_size: int | None,
    export_count: int | None,
    config_path: Path | None,
    verbose: bool,
    list_metrics: bool,
    write_config: bool,
) -> None:
    """Monitor the resources used by processes.

    METRICS are metric selectors such as 'mem:rss', 'io:*:call+max' or
    'time:cpu-raw+ratio/du'. Run 'procmon --list-metrics' for the list.
    """
    if list_metrics:
        print_metrics()
        return

    from procmon import logging as console
    from procmon.aggregation import SamplingEngine
    from procmon.catalog import resolve_all
    from procmon.config import MIN_EVERY, Config
    from procmon.errors import ConfigError, ExportError, MetricError, TargetError
    from procmon.export import ExportKind, create_exporter
    from procmon.forest import ProcessFilter
    from procmon.monitor import ProcessReader, Targets

    try:
        config = Config.load(config_path)
    except ConfigError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e

    display_config = config.display
    export_config = config.export
    every = every if every is not None else display_config.every
    if every < MIN_EVERY:
        raise click.BadParameter(f"must be at least {MIN_EVERY}", param_hint="--every")
    count = count if count is not None else display_config.count
    display = display or display_config.mode
    fmt = fmt or display_config.format
    human = fmt == "human"
    initial_filter = ProcessFilter(process_filter or display_config.filter)
    export_kind = ExportKind(export_type or export_config.kind)
    export_dir = export_dir or Path(export_config.dir)
    export_size = export_size or export_config.size_limit
    export_count = export_count if export_count is not None else export_config.count_limit

    if write_config:
        from dataclasses import replace

        config = replace(
            config,
            display=replace(
                display_config,
                mode=display,
                format=fmt,
                every=every,
                count=count,
                filter=initial_filter.value,
            ),
            export=replace(
                export_config,
                kind=export_kind.value,
                dir=str(export_dir),
                size_limit=export_size,
                count_limit=export_count,
            ),
        )
        path = config_path or config.config_path
        config.save(path)
        console.config_written(str(path))
        return

    console.configure(config, verbose=verbose)

    try:
        monitored = resolve_all(metrics or DEFAULT_METRICS, human=human)
    except MetricError as e:
        raise click.UsageError(str(e)) from e

    targets = Targets(pids=pids, pid_files=pid_files, names=names)
    try:
        targets.check()
    except TargetError as e:
        raise click.UsageError(str(e)) from e

    if display == "any":
        display = "term" if sys.stdout.isatty() else "text"
    if display in ("text", "none") and not targets:
        raise click.UsageError(f"display mode '{display}' requires --pid, --pid-file or --name")

    engine = SamplingEngine(monitored)
    reader = ProcessReader([metric.descriptor for metric in monitored], targets)
    if names and not pids and not pid_files and not reader.read().processes:
        console.target_missing(f"No process matches {', '.join(names)} yet, waiting")
    exporter = create_exporter(
        export_kind,
        export_dir,
        [metric.name for metric in monitored if metric.raw],
        size_limit=export_size,
        count_limit=export_count,
    )

    try:
        if exporter is not None:
            exporter.open()
            console.export_started(str(exporter.directory), export_kind.value)
        try:
            if display == "term":
                from procmon.app import ProcmonApp

                ProcmonApp(
                    engine,
                    reader,
                    every=every,
                    process_filter=initial_filter,
                    exporter=exporter,
                    count=count,
                ).run()
            else:
                from procmon.text import run_loop

                output = click.echo if display == "text" else None
                run_loop(reader, engine, every, count=count, exporter=exporter, output=output)
        finally:
            if exporter is not None:
                exporter.close()
                if exporter.error is not None:
                    console.export_failed(str(exporter.error))
    except ExportError as e:
        console.export_failed(str(e))
        raise SystemExit(1) from e


def print_metrics() -> None:
    """List the metrics that can be monitored."""
    from procmon.catalog import CATALOG

    click.echo(f"{'Metric':18}  {'Kind':7}  {'Ratio':5}  Description")
    click.echo("-" * 75)
    for descriptor in CATALOG:
        ratio = "yes" if descriptor.supports_ratio else ""
        click.echo(
            f"{descriptor.name:18}  {descriptor.kind.value:7}  {ratio:5}  {descriptor.description}"
        )
