#!/usr/bin/env python3
"""
Interactive User Interface Module for isoforge

This module provides rich, interactive interfaces for guiding users through
building customized Windows installation media with clear feedback.
"""

import questionary
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.prompt import Confirm
from pathlib import Path
from typing import Dict, List, Optional

from isoforge.disk_space import format_size
from isoforge.image_converter import ConversionResult, ImageDetectionResult, ImageFormat
from isoforge.progress import ProgressCallback, TaskProgressDetail

PROMPT_STYLE = questionary.Style([
    ('question', 'bold'),
    ('answer', 'fg:#ff9d00 bold'),
    ('pointer', 'fg:#ff9d00 bold'),
    ('highlighted', 'fg:#ff9d00 bold'),
    ('selected', 'fg:#cc5454'),
    ('separator', 'fg:#cc5454'),
    ('instruction', ''),
    ('text', ''),
])


class MediaBuilderUI:
    """Interactive user interface for building installation media."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def show_welcome(self) -> bool:
        """Display welcome message and pipeline overview."""
        welcome_text = """
[bold blue]isoforge - Windows Media Builder[/bold blue]

Turn a stock Windows ISO into customized, unattended installation media.

[yellow]What happens:[/yellow]
• The ISO is mounted and its contents copied to a working directory
• Drivers from this computer or a folder can be added to setup and WinPE
• install.wim and install.esd can be converted into each other
• An answer file and a provisioning script are placed on the media
• A new bootable ISO (BIOS and UEFI) is written with oscdimg

[red]⚠️  Administrator rights and several GB of free space are required ⚠️[/red]
        """

        panel = Panel(
            welcome_text,
            title="💿 isoforge",
            border_style="blue",
            padding=(1, 2)
        )

        self.console.print(panel)
        self.console.print()

        if not Confirm.ask("Do you want to continue?", default=True):
            self.console.print("[yellow]Build cancelled by user.[/yellow]")
            return False

        return True

    def ask_iso_path(self) -> Optional[Path]:
        """Prompt for the source ISO."""
        answer = questionary.path(
            "Path to the Windows ISO:",
            validate=lambda p: Path(p).is_file() and p.lower().endswith(".iso") or "Select an existing .iso file",
            style=PROMPT_STYLE
        ).ask()
        return Path(answer) if answer else None

    def ask_output_path(self, default: str = "") -> Optional[Path]:
        """Prompt for the ISO to create."""
        answer = questionary.path(
            "Where should the new ISO be written?",
            default=default,
            validate=lambda p: p.lower().endswith(".iso") or "Output must end in .iso",
            style=PROMPT_STYLE
        ).ask()
        return Path(answer) if answer else None

    def ask_working_dir(self, default: Path) -> Optional[Path]:
        answer = questionary.path(
            "Working directory for extracted files:",
            default=str(default),
            only_directories=True,
            style=PROMPT_STYLE
        ).ask()
        return Path(answer) if answer else None

    def select_target_format(self, detection: ImageDetectionResult) -> Optional[ImageFormat]:
        """
        Offer a conversion when exactly one format is present.

        Returns:
            The format to convert to, or None to keep the image as it is
        """
        current = detection.primary
        if current is None:
            return None

        other = ImageFormat.ESD if current.format is ImageFormat.WIM else ImageFormat.WIM
        choices = [
            {'name': f'Keep {current.format.file_name}', 'value': None},
            {'name': f'Convert to {other.file_name}', 'value': other},
        ]
        if detection.both_present:
            self.console.print("[yellow]Both install.wim and install.esd are present; install.wim will be used.[/yellow]")

        return questionary.select(
            "Image format:",
            choices=choices,
            style=PROMPT_STYLE
        ).ask()

    def select_driver_source(self) -> Optional[Dict]:
        """
        Ask where drivers should come from.

        Returns:
            {'mode': 'none'|'system'|'folder', 'path': Optional[Path]} or None if cancelled
        """
        mode = questionary.select(
            "Add drivers to the media?",
            choices=[
                {'name': 'No drivers', 'value': 'none'},
                {'name': '🖥️  Export drivers from this computer', 'value': 'system'},
                {'name': '📁 Use drivers from a folder', 'value': 'folder'},
            ],
            style=PROMPT_STYLE
        ).ask()
        if mode is None:
            return None

        path = None
        if mode == 'folder':
            answer = questionary.path(
                "Driver folder:",
                only_directories=True,
                validate=lambda p: Path(p).is_dir() or "Select an existing folder",
                style=PROMPT_STYLE
            ).ask()
            if not answer:
                return None
            path = Path(answer)

        return {'mode': mode, 'path': path}

    def select_answer_file(self) -> Optional[Dict]:
        """
        Ask for an autounattend.xml source.

        Returns:
            {'mode': 'none'|'download'|'file', 'path': Optional[Path]} or None if cancelled
        """
        mode = questionary.select(
            "Answer file (autounattend.xml):",
            choices=[
                {'name': 'No answer file', 'value': 'none'},
                {'name': '🌐 Download the UnattendedWinstall answer file', 'value': 'download'},
                {'name': '📄 Use a local file', 'value': 'file'},
            ],
            style=PROMPT_STYLE
        ).ask()
        if mode is None:
            return None

        path = None
        if mode == 'file':
            answer = questionary.path(
                "Answer file:",
                validate=lambda p: Path(p).is_file() or "Select an existing file",
                style=PROMPT_STYLE
            ).ask()
            if not answer:
                return None
            path = Path(answer)

        return {'mode': mode, 'path': path}

    def select_provisioning(self) -> Optional[Dict]:
        """
        Ask for the provisioning configuration and settings catalog.

        Returns:
            {'config': Optional[Path], 'catalog': Optional[Path]}; both None to skip
        """
        if not questionary.confirm(
            "Embed a provisioning script (Winhancements.ps1)?",
            default=False,
            style=PROMPT_STYLE
        ).ask():
            return {'config': None, 'catalog': None}

        config_path = questionary.path(
            "Configuration JSON:",
            validate=lambda p: Path(p).is_file() or "Select an existing file",
            style=PROMPT_STYLE
        ).ask()
        if not config_path:
            return None

        catalog_path = questionary.path(
            "Settings catalog JSON (leave empty for none):",
            style=PROMPT_STYLE
        ).ask()
        if catalog_path is None:
            return None

        return {
            'config': Path(config_path),
            'catalog': Path(catalog_path) if catalog_path else None,
        }

    def show_detection(self, detection: ImageDetectionResult):
        """Display the image formats found in the working directory."""
        if detection.none_present:
            self.console.print("[red]No install.wim or install.esd found in sources.[/red]")
            return

        table = Table(title="Install Images", show_header=True, header_style="bold magenta")
        table.add_column("File", style="cyan", no_wrap=True)
        table.add_column("Size", style="yellow")
        table.add_column("Editions", style="green")
        table.add_column("Names", style="white")
        table.add_column("Primary", style="bold")

        primary = detection.primary
        for image_format in ImageFormat:
            info = detection.get(image_format)
            if info is None:
                continue
            table.add_row(
                info.format.file_name,
                format_size(info.size_bytes),
                str(info.image_count),
                ", ".join(info.edition_names[:3]) + (" ..." if len(info.edition_names) > 3 else ""),
                "[green]✓[/green]" if info is primary else ""
            )

        self.console.print(table)

    def show_plan(self, plan: Dict) -> bool:
        """Summarize the chosen steps and ask for confirmation."""
        drivers = plan['drivers']
        answer = plan['answer_file']
        provisioning = plan['provisioning']
        summary = f"""
[bold]Source ISO:[/bold] {plan['iso']}
[bold]Output ISO:[/bold] {plan['output']}
[bold]Working directory:[/bold] {plan['working_dir']}

[blue]Steps:[/blue]
• Extract ISO
• Drivers: {drivers['mode'] if drivers['mode'] != 'folder' else drivers['path']}
• Convert image: {plan['target'].file_name if plan.get('target') else 'no'}
• Answer file: {answer['mode'] if answer['mode'] != 'file' else answer['path']}
• Provisioning script: {provisioning['config'] or 'no'}
• Create ISO
• Clean up working directory: {'yes' if plan['cleanup'] else 'no'}
        """

        self.console.print(Panel(summary.strip(), title="Build Plan", border_style="cyan", padding=(1, 2)))
        return Confirm.ask("Start the build?", default=True)

    def show_progress_screen(self, title: str):
        """Create a progress tracking interface."""
        self.console.print(f"\n[bold blue]{title}[/bold blue]")
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console
        )

    def progress_adapter(self, progress: Progress, task, show_output: bool = False) -> ProgressCallback:
        """
        Turn pipeline progress events into progress bar updates.

        Args:
            progress: Active rich Progress
            task: Task id returned by progress.add_task
            show_output: Echo raw tool output lines below the bar

        Returns:
            Callback accepting a TaskProgressDetail
        """
        def callback(detail: TaskProgressDetail):
            if detail.progress is not None:
                progress.update(task, description=detail.status_text, completed=detail.progress)
            else:
                progress.update(task, description=detail.status_text)
            if show_output and detail.terminal_output:
                progress.console.print(f"[dim]{detail.terminal_output}[/dim]")

        return callback

    def show_conversion_result(self, result: ConversionResult):
        if not result.success:
            self.show_error("Conversion Failed", result.message or "Image conversion failed")
        elif not result.source_deleted:
            self.show_warning("Conversion Needs Attention", result.message)
        else:
            self.show_success("Conversion Complete",
                              f"{result.image_count} edition(s) written to {result.output_path}")

    def show_warning(self, title: str, message: str):
        panel = Panel(
            f"[yellow]{message}[/yellow]",
            title=f"⚠️  {title}",
            border_style="yellow",
            padding=(1, 2)
        )

        self.console.print(panel)

    def show_error(self, title: str, message: str, details: str = None):
        """Display error message with optional details."""
        error_text = f"[red]{message}[/red]"
        if details:
            error_text += f"\n\n[dim]{details}[/dim]"

        panel = Panel(
            error_text,
            title=f"❌ {title}",
            border_style="red",
            padding=(1, 2)
        )

        self.console.print(panel)

    def show_success(self, title: str, message: str):
        """Display success message."""
        panel = Panel(
            f"[green]{message}[/green]",
            title=f"✅ {title}",
            border_style="green",
            padding=(1, 2)
        )

        self.console.print(panel)

    def show_completion_summary(self, output_path: Path, steps: List[str], log_file: Optional[Path] = None):
        """Show final completion summary with next steps."""
        step_lines = "\n".join(f"• {step}" for step in steps)
        completion_text = f"""
[bold green]🎉 Installation Media Ready![/bold green]

[bold]Output:[/bold] {output_path}

[bold blue]Completed steps:[/bold blue]
{step_lines}

[bold yellow]Next Steps:[/bold yellow]
1. Write the ISO to a USB stick (for example with Rufus) or attach it to a VM
2. Boot the target machine from the media
3. Setup applies the answer file and runs Winhancements.ps1 automatically
        """
        if log_file:
            completion_text += f"\n[dim]Log: {log_file}[/dim]"

        panel = Panel(
            completion_text.strip(),
            title="Build Complete",
            border_style="green",
            padding=(1, 2)
        )

        self.console.print(panel)
