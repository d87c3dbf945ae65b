import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer  # type: ignore
from pydantic import ValidationError
from rich.console import Console  # type: ignore
from rich.panel import Panel  # type: ignore
from rich.table import Table  # type: ignore
from typing_extensions import Annotated

import aidloop
from aidloop.core.algorithms.carb_absorption import CarbAbsorptionAggregator
from aidloop.core.algorithms.prediction import PredictionEngine, PredictionResult
from aidloop.core.devices.pump import SimulatedPump
from aidloop.core.loop import LoopController, LoopState
from aidloop.data.stores import (
    InMemoryCarbStore,
    InMemoryGlucoseStore,
    InMemoryPumpHistoryStore,
    InMemorySettingsStore,
    InMemorySuggestionStore,
    JsonSettingsStore,
    JsonSuggestionStore,
    StaticProfileStore,
)
from aidloop.validation import (
    format_validation_error,
    load_profile,
    load_scenario,
    scenario_summary,
    scenario_warnings,
)
from aidloop.validation.schemas import ScenarioModel

app = typer.Typer(help="aidloop - dosing decision engine for automated insulin delivery.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


def _load_scenario_or_exit(path: Path, console: Console) -> ScenarioModel:
    if not path.is_file():
        console.print(f"[bold red]Error: Scenario file '{path}' not found.[/bold red]")
        raise typer.Exit(code=1)
    try:
        return load_scenario(path)
    except ValidationError as e:
        console.print(f"[bold red]Scenario '{path}' is invalid:[/bold red]")
        for line in format_validation_error(e):
            console.print(f"  - {line}")
        raise typer.Exit(code=1)


def predictions_frame(result: PredictionResult, step_minutes: float = 7.5) -> pd.DataFrame:
    predictions = result.predictions
    return pd.DataFrame(
        {
            "minutes": [i * step_minutes for i in range(len(predictions.iob))],
            "IOB": predictions.iob,
            "ZT": predictions.zt,
            "COB": predictions.cob,
            "UAM": predictions.uam,
        }
    )


def build_controller(scenario: ScenarioModel, output_dir: Optional[Path] = None) -> LoopController:
    """Wire stores and a simulated pump from a validated scenario."""
    now = scenario.now
    pump_config = scenario.pump
    pump = SimulatedPump(
        basal_step=pump_config.basal_step,
        bolus_step=pump_config.bolus_step,
        reservoir=pump_config.reservoir,
        battery_percent=pump_config.battery_percent,
        suspended=pump_config.suspended,
        bolusing=pump_config.bolusing,
        clock=lambda: now,
    )
    if output_dir is not None:
        suggestion_store = JsonSuggestionStore(output_dir)
        settings_store = JsonSettingsStore(output_dir)
    else:
        suggestion_store = InMemorySuggestionStore()
        settings_store = InMemorySettingsStore()
    settings_store.save_loop_settings(scenario.settings.to_settings())

    return LoopController(
        state=LoopState(),
        glucose_store=InMemoryGlucoseStore(sample.to_sample() for sample in scenario.glucose),
        carb_store=InMemoryCarbStore(entry.to_entry() for entry in scenario.carbs),
        pump_history=InMemoryPumpHistoryStore(event.to_event() for event in scenario.doses),
        profile_store=StaticProfileStore(scenario.profile.to_profile()),
        suggestion_store=suggestion_store,
        settings_store=settings_store,
        pump=pump,
        safety_config=scenario.safety.to_config(),
        clock=lambda: now,
    )


@app.command()
def predict(
    bg: Annotated[float, typer.Option(help="Current glucose (mg/dL)")],
    iob: Annotated[float, typer.Option(help="Insulin on board (U)")] = 0.0,
    cob: Annotated[float, typer.Option(help="Carbs on board (g)")] = 0.0,
    isf: Annotated[float, typer.Option(help="Insulin sensitivity factor (mg/dL per U)")] = 50.0,
    cr: Annotated[float, typer.Option(help="Carb ratio (g per U)")] = 15.0,
    basal: Annotated[float, typer.Option(help="Scheduled basal rate (U/h)")] = 0.8,
    target: Annotated[float, typer.Option(help="Target glucose (mg/dL)")] = 100.0,
    deviation: Annotated[float, typer.Option(help="Current deviation (mg/dL per 5 min)")] = 0.0,
    dia: Annotated[float, typer.Option(help="Insulin action duration (hours)")] = 4.0,
    output_csv: Annotated[Optional[Path], typer.Option(help="Write the trajectories to this CSV file")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw result as JSON")] = False,
):
    """
    Forecast glucose along the IOB, ZT, COB and UAM hypotheses.
    """
    console = Console()
    try:
        engine = PredictionEngine(insulin_duration_hours=dia)
    except ValueError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)
    result = engine.predict(bg, iob, cob, isf, cr, basal, target, deviation=deviation)

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    frame = predictions_frame(result, engine.step_minutes)
    table = Table(title="Predicted glucose (mg/dL)", show_lines=False)
    for column in frame.columns:
        table.add_column(str(column), justify="right")
    for _, row in frame.iloc[::4].iterrows():
        table.add_row(f"{row['minutes']:.0f}", *(str(int(row[c])) for c in ("IOB", "ZT", "COB", "UAM")))
    console.print(table)
    console.print(Panel(result.reason, title="Reason", expand=False))
    console.print(f"insulinReq: [bold]{result.insulin_req:.2f} U[/bold]  eventualBG: {result.eventual_bg:.0f}")

    if output_csv is not None:
        frame.to_csv(output_csv, index=False)
        console.print(f"Trajectories written to {output_csv}")


@app.command()
def meal(
    scenario_path: Annotated[Path, typer.Argument(help="Scenario YAML/JSON with glucose, carbs and doses")],
):
    """
    Run carb absorption detection on a scenario and show COB and deviation statistics.
    """
    console = Console()
    scenario = _load_scenario_or_exit(scenario_path, console)
    result = CarbAbsorptionAggregator().aggregate(
        [entry.to_entry() for entry in scenario.carbs],
        [sample.to_sample() for sample in scenario.glucose],
        scenario.profile.to_profile(),
        scenario.now,
        [event.to_event() for event in scenario.doses],
    )

    table = Table(title=f"Meal data at {scenario.now.isoformat()}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in result.to_dict().items():
        if key == "allDeviations":
            value = ", ".join(str(v) for v in value) or "-"
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def loop(
    scenario_path: Annotated[Path, typer.Argument(help="Scenario YAML/JSON describing the loop inputs")],
    output_dir: Annotated[Optional[Path], typer.Option(help="Persist suggested.json / enacted.json here")] = None,
    closed_loop: Annotated[Optional[bool], typer.Option("--closed-loop/--open-loop", help="Override the scenario loop mode")] = None,
    verbose: Annotated[bool, typer.Option(help="Enable debug logging")] = False,
):
    """
    Run a single loop iteration against a simulated pump.
    """
    _configure_logging(verbose)
    console = Console()
    scenario = _load_scenario_or_exit(scenario_path, console)
    if closed_loop is not None:
        scenario.settings.closed_loop = closed_loop
    for warning in scenario_warnings(scenario):
        console.print(f"[yellow]Warning: {warning}[/yellow]")

    controller = build_controller(scenario, output_dir)
    suggestion = asyncio.run(controller.heartbeat(scenario.now))

    if suggestion is None:
        error = controller.state.last_error
        console.print(f"[bold red]Loop failed: {error}[/bold red]")
        raise typer.Exit(code=1)

    mode = "closed" if scenario.settings.closed_loop else "open"
    table = Table(title=f"Suggestion ({mode} loop)")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    payload = suggestion.to_dict()
    payload.pop("predBGs", None)
    for key, value in payload.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)
    pump = controller.pump
    if isinstance(pump, SimulatedPump) and pump.commands:
        commands: List[str] = []
        for command in pump.commands:
            if command.kind == "temp_basal":
                commands.append(f"temp {command.rate:.2f} U/h x {command.duration:.0f} min")
            elif command.kind == "bolus":
                commands.append(f"bolus {command.units:.2f} U")
            else:
                commands.append(command.kind)
        console.print(Panel("\n".join(commands), title="Pump commands", expand=False))


@app.command("validate")
def validate(
    path: Annotated[Path, typer.Argument(help="Scenario YAML/JSON to validate")],
):
    """
    Validate a scenario file and print a summary.
    """
    console = Console()
    scenario = _load_scenario_or_exit(path, console)
    summary = scenario_summary(scenario)
    console.print(Panel("\n".join(f"{k}: {v}" for k, v in summary.items()), title="Scenario OK", expand=False))
    for warning in scenario_warnings(scenario):
        console.print(f"[yellow]Warning: {warning}[/yellow]")


@app.command("validate-profile")
def validate_profile(
    path: Annotated[Path, typer.Argument(help="Profile YAML/JSON to validate")],
):
    """
    Validate a therapy profile file.
    """
    console = Console()
    if not path.is_file():
        console.print(f"[bold red]Error: Profile file '{path}' not found.[/bold red]")
        raise typer.Exit(code=1)
    try:
        profile = load_profile(path)
    except ValidationError as e:
        console.print(f"[bold red]Profile '{path}' is invalid:[/bold red]")
        for line in format_validation_error(e):
            console.print(f"  - {line}")
        raise typer.Exit(code=1)
    console.print(f"[green]Profile OK[/green] (max basal {profile.max_basal} U/h, max bolus {profile.max_bolus} U, DIA {profile.dia_hours} h)")


@app.command()
def version():
    """Print the installed version."""
    Console().print(aidloop.__version__)


if __name__ == "__main__":
    app()
