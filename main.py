import sys
from pathlib import Path
from typing import Callable, Optional

import typer
from rich.markup import escape

from isoforge import __version__
from isoforge.config import BuildSettings, SettingsCatalog, load_configuration, load_settings_catalog
from isoforge.errors import MediaBuildError
from isoforge.image_converter import ImageFormat
from isoforge.interactive_ui import MediaBuilderUI
from isoforge.logger import LogCategory, MediaLogger, create_progress_callback
from isoforge.media_builder import MediaBuilder

app = typer.Typer(
    name="isoforge",
    help="isoforge - Build customized Windows installation media",
    add_completion=False
)

DEFAULT_WORK_DIR = BuildSettings().working_dir

WorkDirOption = typer.Option(DEFAULT_WORK_DIR, "--work-dir", "-w", help="Working directory holding the extracted media")
LogDirOption = typer.Option(None, "--log-dir", help="Directory for session logs")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Echo log messages to the console")


def _require_windows(command: str):
    """Refuse to run Windows-only commands elsewhere."""
    if sys.platform != "win32":
        typer.echo(f"❌ '{command}' needs Windows: it drives DISM, PowerShell and oscdimg.", err=True)
        typer.echo("Run it from an elevated prompt on a Windows machine.", err=True)
        raise typer.Exit(1)


def _make_builder(log_dir: Optional[Path], verbose: bool,
                  catalog: Optional[SettingsCatalog] = None) -> MediaBuilder:
    settings = BuildSettings()
    if log_dir:
        settings.log_dir = log_dir
    logger = MediaLogger(settings.log_dir, console=verbose)
    return MediaBuilder.create(settings=settings, logger=logger, catalog=catalog)


def _run_step(ui: MediaBuilderUI, builder: MediaBuilder, category: LogCategory,
              title: str, description: str, action: Callable):
    """
    Run action(progress_callback) under a progress bar and return its result.

    Every progress event is shown on the bar and recorded in the session log.
    """
    operation = title.lower().replace(" ", "_")
    record = create_progress_callback(builder.logger, category, operation)
    with ui.show_progress_screen(title) as progress:
        task = progress.add_task(description, total=100)
        display = ui.progress_adapter(progress, task)

        def callback(detail):
            display(detail)
            record(detail)

        result = action(callback)
        progress.update(task, completed=100)
    return result


def _execute(ui: MediaBuilderUI, builder: MediaBuilder, failure_title: str,
             body: Callable[[], bool], export_dir: Optional[Path] = None):
    """
    Run a command body with the shared error handling.

    Args:
        ui: User interface for panels
        builder: Builder whose processes are stopped on Ctrl+C
        failure_title: Panel title for failures
        body: Callable returning True on success
        export_dir: Copy the session logs here once the session is finalized
    """
    success = False
    try:
        success = body()
    except KeyboardInterrupt:
        builder.cancel()
        ui.console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        builder.logger.finalize_session(False, "Cancelled by user")
        raise typer.Exit(1)
    except MediaBuildError as e:
        details = "\n".join(getattr(e, "errors", [])) or None
        ui.show_error(failure_title, str(e), details)
    except (OSError, ValueError) as e:
        ui.show_error(failure_title, f"An unexpected error occurred: {e}")

    builder.logger.finalize_session(success)
    if export_dir and builder.logger.export_logs(export_dir):
        ui.console.print(f"[dim]Logs exported to {export_dir}[/dim]")
    if not success:
        for entry in builder.logger.get_recent_errors(3):
            ui.console.print(f"[red]  {entry.operation}: {escape(entry.message)}[/red]")
        ui.console.print(f"[dim]Log: {builder.logger.main_log_file}[/dim]")
        raise typer.Exit(1)


@app.command()
def extract(
    iso_path: Path = typer.Argument(..., help="Windows ISO to extract"),
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Mount a Windows ISO and copy its contents into the working directory."""
    _require_windows("extract")
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        ok = _run_step(ui, builder, LogCategory.EXTRACTION, "Extracting ISO", "Preparing...",
                       lambda cb: builder.extract_iso(iso_path, work_dir, cb))
        if ok:
            ui.show_success("Extraction Complete", f"Media extracted to {work_dir}")
        else:
            ui.show_error("Extraction Failed", f"Could not extract {iso_path}")
        return ok

    _execute(ui, builder, "Extraction Failed", body)


@app.command()
def detect(
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Show which install image formats the working directory contains."""
    _require_windows("detect")
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        detection = builder.detect_image_format(work_dir)
        ui.show_detection(detection)
        return not detection.none_present

    _execute(ui, builder, "Detection Failed", body)


@app.command()
def convert(
    target: str = typer.Argument(..., help="Target format: wim or esd"),
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Convert install.wim to install.esd or back."""
    _require_windows("convert")
    try:
        image_format = ImageFormat.parse(target)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        result = _run_step(ui, builder, LogCategory.CONVERSION,
                           f"Converting to {image_format.file_name}", "Detecting image format...",
                           lambda cb: builder.convert_image_format(work_dir, image_format, cb))
        ui.show_conversion_result(result)
        return result.success

    _execute(ui, builder, "Conversion Failed", body)


@app.command("add-drivers")
def add_drivers(
    source: Optional[Path] = typer.Option(None, "--source", "-s", help="Driver folder; omit to export this computer's drivers"),
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Add drivers to Windows Setup and WinPE."""
    _require_windows("add-drivers")
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        ok = _run_step(ui, builder, LogCategory.DRIVERS, "Adding Drivers", "Preparing...",
                       lambda cb: builder.inject_drivers(work_dir, source, cb))
        if ok:
            ui.show_success("Drivers Added", "Driver packages staged on the media")
        else:
            ui.show_error("Driver Injection Failed", "No drivers were added")
        return ok

    _execute(ui, builder, "Driver Injection Failed", body)


@app.command("add-xml")
def add_xml(
    source: Optional[Path] = typer.Argument(None, help="autounattend.xml to place on the media"),
    download: bool = typer.Option(False, "--download", help="Download the UnattendedWinstall answer file"),
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Place an answer file at the root of the media."""
    if source is None and not download:
        typer.echo("❌ Give an answer file path or --download.", err=True)
        raise typer.Exit(1)

    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        answer_source = source
        if download:
            answer_source = _run_step(
                ui, builder, LogCategory.USER_ACTION, "Downloading Answer File", "Downloading...",
                lambda cb: builder.download_answer_file(work_dir / builder.settings.answer_file_name, cb))
        ok = builder.add_answer_file(answer_source, work_dir)
        if ok:
            ui.show_success("Answer File Added", f"{builder.settings.answer_file_name} placed in {work_dir}")
        else:
            ui.show_error("Answer File Failed", f"Could not place {answer_source} in {work_dir}")
        return ok

    _execute(ui, builder, "Answer File Failed", body)


@app.command("build-script")
def build_script(
    config: Path = typer.Argument(..., help="Provisioning configuration JSON"),
    catalog: Optional[Path] = typer.Option(None, "--catalog", "-c", help="Settings catalog JSON"),
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Generate and validate Winhancements.ps1 and stage it on the media."""
    _require_windows("build-script")
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        configuration = load_configuration(config)
        settings_catalog = load_settings_catalog(catalog) if catalog else None
        script_path = _run_step(
            ui, builder, LogCategory.SCRIPT, "Building Provisioning Script", "Generating...",
            lambda cb: builder.write_provisioning_script(configuration, work_dir, settings_catalog, cb))
        ui.show_success("Script Ready", f"Validated script written to {script_path}")
        return True

    _execute(ui, builder, "Script Generation Failed", body)


@app.command("create-iso")
def create_iso(
    output: Path = typer.Argument(..., help="ISO file to write"),
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Write a bootable BIOS/UEFI ISO from the working directory."""
    _require_windows("create-iso")
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        ok = _run_step(ui, builder, LogCategory.PACKAGING, "Creating ISO", "Preparing...",
                       lambda cb: builder.create_iso(work_dir, output, cb))
        if ok:
            ui.show_success("ISO Created", f"Bootable ISO written to {output}")
        else:
            ui.show_error("ISO Creation Failed", f"Could not create {output}")
        return ok

    _execute(ui, builder, "ISO Creation Failed", body)


@app.command("ensure-tool")
def ensure_tool(
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Locate oscdimg.exe, installing it if necessary."""
    _require_windows("ensure-tool")
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        availability = _run_step(ui, builder, LogCategory.TOOLING, "Locating oscdimg", "Searching...",
                                builder.ensure_tool)
        ui.show_success("oscdimg Available", f"{availability.path} ({availability.provenance.value})")
        return True

    _execute(ui, builder, "oscdimg Unavailable", body)


@app.command()
def cleanup(
    work_dir: Path = WorkDirOption,
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
):
    """Delete the working directory."""
    ui = MediaBuilderUI()
    builder = _make_builder(log_dir, verbose)

    def body():
        ok = builder.cleanup_working_directory(work_dir)
        if ok:
            ui.show_success("Cleanup Complete", f"Removed {work_dir}")
        else:
            ui.show_error("Cleanup Failed", f"Could not remove {work_dir}",
                          "Close any program using files in it and try again.")
        return ok

    _execute(ui, builder, "Cleanup Failed", body)


@app.command()
def build(
    log_dir: Optional[Path] = LogDirOption,
    verbose: bool = VerboseOption,
    export_logs: Optional[Path] = typer.Option(None, "--export-logs",
                                               help="Copy the session logs here when the build ends"),
):
    """
    Build customized installation media interactively.

    Walks through source ISO, drivers, image format, answer file and
    provisioning script, then runs the whole pipeline.
    """
    _require_windows("build")
    ui = MediaBuilderUI()

    if not ui.show_welcome():
        raise typer.Exit(0)

    iso_path = ui.ask_iso_path()
    if not iso_path:
        typer.echo("No ISO selected. Build cancelled.")
        raise typer.Exit(0)

    output = ui.ask_output_path(str(iso_path.with_name(iso_path.stem + "_custom.iso")))
    working_dir = ui.ask_working_dir(DEFAULT_WORK_DIR)
    drivers = ui.select_driver_source()
    answer_file = ui.select_answer_file()
    provisioning = ui.select_provisioning()
    if None in (output, working_dir, drivers, answer_file, provisioning):
        typer.echo("Build cancelled.")
        raise typer.Exit(0)

    cleanup_after = typer.confirm("Delete the working directory when done?", default=True)
    plan = {
        'iso': iso_path,
        'output': output,
        'working_dir': working_dir,
        'drivers': drivers,
        'answer_file': answer_file,
        'provisioning': provisioning,
        'cleanup': cleanup_after,
    }
    if not ui.show_plan(plan):
        typer.echo("Build cancelled by user.")
        raise typer.Exit(0)

    catalog = None
    if provisioning['catalog']:
        try:
            catalog = load_settings_catalog(provisioning['catalog'])
        except (OSError, ValueError) as e:
            ui.show_error("Invalid Settings Catalog", str(e))
            raise typer.Exit(1)
    builder = _make_builder(log_dir, verbose, catalog)

    def body():
        steps = []
        if not _run_step(ui, builder, LogCategory.EXTRACTION, "Extracting ISO", "Preparing...",
                         lambda cb: builder.extract_iso(iso_path, working_dir, cb)):
            ui.show_error("Extraction Failed", f"Could not extract {iso_path}")
            return False
        steps.append("ISO extracted")

        detection = builder.detect_image_format(working_dir)
        ui.show_detection(detection)
        target = ui.select_target_format(detection)
        if target is not None:
            result = _run_step(ui, builder, LogCategory.CONVERSION,
                               f"Converting to {target.file_name}", "Converting...",
                               lambda cb: builder.convert_image_format(working_dir, target, cb))
            ui.show_conversion_result(result)
            if not result.success:
                return False
            steps.append(f"Image converted to {target.file_name}")

        if drivers['mode'] != 'none':
            if _run_step(ui, builder, LogCategory.DRIVERS, "Adding Drivers", "Preparing...",
                         lambda cb: builder.inject_drivers(working_dir, drivers['path'], cb)):
                steps.append("Drivers added")
            else:
                ui.show_warning("No Drivers Added", "Continuing without extra drivers")

        if answer_file['mode'] != 'none':
            source = answer_file['path']
            if answer_file['mode'] == 'download':
                source = _run_step(
                    ui, builder, LogCategory.USER_ACTION, "Downloading Answer File", "Downloading...",
                    lambda cb: builder.download_answer_file(working_dir / builder.settings.answer_file_name, cb))
            if not builder.add_answer_file(source, working_dir):
                ui.show_error("Answer File Failed", f"Could not place {source} on the media")
                return False
            steps.append("Answer file added")

        if provisioning['config']:
            configuration = load_configuration(provisioning['config'])
            _run_step(ui, builder, LogCategory.SCRIPT, "Building Provisioning Script", "Generating...",
                      lambda cb: builder.write_provisioning_script(configuration, working_dir, progress=cb))
            steps.append("Provisioning script embedded")

        if not _run_step(ui, builder, LogCategory.PACKAGING, "Creating ISO", "Preparing...",
                         lambda cb: builder.create_iso(working_dir, output, cb)):
            ui.show_error("ISO Creation Failed", f"Could not create {output}")
            return False
        steps.append("Bootable ISO created")

        if cleanup_after:
            if builder.cleanup_working_directory(working_dir):
                steps.append("Working directory removed")
            else:
                ui.show_warning("Cleanup Incomplete", f"Delete {working_dir} manually")

        ui.show_completion_summary(output, steps, builder.logger.main_log_file)
        return True

    _execute(ui, builder, "Build Failed", body, export_logs)


@app.command()
def version():
    """Show version information."""
    ui = MediaBuilderUI()
    ui.console.print("[bold blue]isoforge[/bold blue]")
    ui.console.print(f"Version: {__version__}")
    ui.console.print("A tool for building customized Windows installation media")


if __name__ == "__main__":
    app()
