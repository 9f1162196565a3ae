import dataclasses
import functools
import json
import logging
import os
import warnings

import rich_click as click
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TimeElapsedColumn
from rich.traceback import install as rich_traceback_handler
from rich_click.patch import patch as rich_click_patch

rich_click_patch()
from click_option_group import optgroup

from pyloopanalysis import __version__
from pyloopanalysis.analysis import AnalysisConfig, analyze, estimate_tempo, load_config, onset_strength, stft
from pyloopanalysis.audio import AudioTrack
from pyloopanalysis.console import _COMMAND_GROUPS, _OPTION_GROUPS, print_analysis, print_tempo, rich_console
from pyloopanalysis.exceptions import PyLoopAnalysisError

# CLI --help styling
click.rich_click.OPTION_GROUPS = _OPTION_GROUPS
click.rich_click.COMMAND_GROUPS = _COMMAND_GROUPS
click.rich_click.USE_RICH_MARKUP = True
# End CLI styling


@click.group("pyloopanalysis")
@click.option("--debug", "-d", is_flag=True, default=False, help="Enables debugging mode.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enables verbose logging output.")
@click.version_option(__version__, prog_name="pyloopanalysis", message="%(prog)s %(version)s")
def cli_main(debug, verbose):
    """Tempo, beat and loop-point analysis for audio files."""
    if debug:
        os.environ["PLA_DEBUG"] = "1"
        warnings.simplefilter("default")
        rich_traceback_handler(console=rich_console, suppress=[click])
    else:
        warnings.filterwarnings("ignore")

    if verbose:
        logging.basicConfig(format="%(message)s", level=logging.INFO, handlers=[RichHandler(level=logging.INFO, console=rich_console, rich_tracebacks=True, show_path=debug, show_time=False, tracebacks_suppress=[click])])
    else:
        logging.basicConfig(format="%(message)s", level=logging.ERROR, handlers=[RichHandler(level=logging.ERROR, console=rich_console, show_time=False, show_path=False)])


def common_path_options(f):
    @click.option("--path", type=click.Path(exists=True, dir_okay=False), required=True, help="Path to the audio file.")
    @click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON instead of tables.")

    @functools.wraps(f)
    def wrapper_common_options(*args, **kwargs):
        return f(*args, **kwargs)

    return wrapper_common_options


def common_tempo_options(f):
    @optgroup.group("Tempo options", help="Bounds of the tempo search")
    @optgroup.option("--min-bpm", type=click.FloatRange(min=1.0), default=None, help="Lowest tempo considered. [dim](default: 60)[/]")
    @optgroup.option("--max-bpm", type=click.FloatRange(min=1.0), default=None, help="Highest tempo considered. [dim](default: 200)[/]")

    @functools.wraps(f)
    def wrapper_common_options(*args, **kwargs):
        return f(*args, **kwargs)

    return wrapper_common_options


def build_config(config_path=None, min_bpm=None, max_bpm=None, workers=None, top=None) -> AnalysisConfig:
    """Load the JSON configuration (if any) and apply command-line overrides."""
    config = load_config(config_path) if config_path else AnalysisConfig()

    tempo_overrides = {k: v for k, v in (("min_bpm", min_bpm), ("max_bpm", max_bpm)) if v is not None}
    if tempo_overrides:
        config = dataclasses.replace(config, tempo=dataclasses.replace(config.tempo, **tempo_overrides))
    if workers is not None:
        config = dataclasses.replace(config, spectral=dataclasses.replace(config.spectral, n_workers=workers))
    if top is not None:
        config = dataclasses.replace(config, structure=dataclasses.replace(config.structure, top_k=top))
    return config


@cli_main.command("analyze")
@common_path_options
@common_tempo_options
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None, help="JSON file with analysis settings.")
@click.option("--workers", type=click.IntRange(min=1, max=64), default=None, help="Threads used for spectral analysis.")
@click.option("--top", type=click.IntRange(min=1, max=100), default=None, help="Number of loop candidates to keep. [dim](default: 10)[/]")
def analyze_cmd(path, as_json, min_bpm, max_bpm, config_path, workers, top):
    """Detect tempo, beats and the best loop points of an audio file."""
    try:
        config = build_config(config_path, min_bpm, max_bpm, workers, top)
        with Progress(
            SpinnerColumn(),
            *Progress.get_default_columns(),
            TimeElapsedColumn(),
            console=rich_console,
            transient=True,
            disable=as_json,
        ) as progress:
            progress.add_task("Analyzing", total=None)
            track = AudioTrack(path)
            result = analyze(track.signal, config=config)

        if as_json:
            payload = {"file": track.filename, **result.to_dict()}
            click.echo(json.dumps(payload, indent=2))
        else:
            rich_console.print(f"\n[bold]Analysis of \"{track.filename}\"[/] ({track.total_duration:.2f}s, {track.rate} Hz)\n")
            print_analysis(result, top=config.structure.top_k)
    except PyLoopAnalysisError as e:
        print_exception(e)


@cli_main.command()
@common_path_options
@common_tempo_options
def tempo(path, as_json, min_bpm, max_bpm):
    """Estimate the tempo of an audio file."""
    try:
        config = build_config(min_bpm=min_bpm, max_bpm=max_bpm)
        track = AudioTrack(path)
        spec = stft(
            track.signal,
            config.spectral.frame_length,
            config.spectral.hop_length,
            config.spectral.window,
        )
        estimate = estimate_tempo(
            onset_strength(spec), track.rate, config.spectral.hop_length, config=config.tempo
        )

        if as_json:
            click.echo(json.dumps({"file": track.filename, **estimate.to_dict()}, indent=2))
        else:
            print_tempo(estimate)
    except PyLoopAnalysisError as e:
        print_exception(e)


def print_exception(e: Exception):
    if "PLA_DEBUG" in os.environ:
        rich_console.print_exception(suppress=[click])
    else:
        logging.error(e)
    raise SystemExit(1)


if __name__ == "__main__":
    cli_main()
