"""
Command-line interface for mlstudio workspaces.
"""

import json
from typing import Any, Dict, Optional, Tuple

import click

from mlstudio.exceptions import MLStudioException
from mlstudio.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


def _workspace(ctx):
    """Workspace selected by --workspace/--path, or found from the config file."""
    from mlstudio.workspace.workspace import Workspace

    name = ctx.obj.get("workspace_name")
    if name:
        return Workspace.get(name, ctx.obj.get("workspace_path"))
    return Workspace.from_config()


def _parse_assignments(values: Tuple[str, ...]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into a dictionary, decoding JSON values where possible."""
    parsed: Dict[str, Any] = {}
    for item in values:
        key, separator, raw = item.partition("=")
        if not separator or not key:
            raise click.BadParameter(f"Expected key=value, got '{item}'")
        try:
            parsed[key] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[key] = raw
    return parsed


@click.group()
@click.option('--workspace', '-w', 'workspace_name', envvar='MLSTUDIO_WORKSPACE', help='Workspace name')
@click.option('--path', 'workspace_path', envvar='MLSTUDIO_WORKSPACE_ROOT', help='Directory holding workspaces')
@click.pass_context
def cli(ctx, workspace_name, workspace_path):
    """mlstudio Command Line Interface"""
    ctx.ensure_object(dict)
    ctx.obj["workspace_name"] = workspace_name
    ctx.obj["workspace_path"] = workspace_path


# ============================================================================
# Workspace
# ============================================================================

@cli.group()
def workspace():
    """Workspace commands"""
    pass


@workspace.command('create')
@click.argument('name')
@click.option('--description', help='Workspace description')
@click.option('--config-dir', default='.', type=click.Path(file_okay=False), help='Where to write the config file')
@click.pass_context
def workspace_create(ctx, name, description, config_dir):
    """Create a workspace and write its config file"""
    from mlstudio.workspace.workspace import Workspace

    try:
        ws = Workspace.create(name, path=ctx.obj.get("workspace_path"), description=description)
        config_path = ws.write_config(config_dir)
        click.echo(f"✓ Workspace '{ws.name}' ready at {ws.path}")
        click.echo(f"  Config written to {config_path}")
    except MLStudioException as e:
        click.echo(f"✗ Failed to create workspace: {e.message}", err=True)
        raise click.Abort()


@workspace.command('show')
@click.pass_context
def workspace_show(ctx):
    """Display workspace details"""
    try:
        ws = _workspace(ctx)
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    details = ws.get_details()
    click.echo(f"\n=== Workspace {details['name']} ===\n")
    click.echo(f"Path: {details['path']}")
    if details.get('description'):
        click.echo(f"Description: {details['description']}")
    click.echo(f"Created: {details['created_at']}")
    click.echo(f"Datasets: {len(ws.datasets)}")
    click.echo(f"Compute targets: {len(ws.compute_targets)}")
    click.echo(f"Experiments: {len(ws.experiments)}")
    click.echo(f"Models: {len(ws.models)}")


# ============================================================================
# Compute
# ============================================================================

@cli.group()
def compute():
    """Compute target commands"""
    pass


@compute.command('create')
@click.argument('name')
@click.option('--vm-size', default='STANDARD_DS3_V2', help='VM size')
@click.option('--min-nodes', default=0, help='Minimum node count')
@click.option('--max-nodes', default=4, help='Maximum node count')
@click.option('--idle-seconds', type=int, help='Idle seconds before scale-down')
@click.option('--priority', type=click.Choice(['dedicated', 'lowpriority']), default='dedicated')
@click.pass_context
def compute_create(ctx, name, vm_size, min_nodes, max_nodes, idle_seconds, priority):
    """Provision a compute target"""
    from mlstudio.compute.target import AmlCompute, ComputeTarget

    try:
        ws = _workspace(ctx)
        config = AmlCompute.provisioning_configuration(
            vm_size=vm_size,
            min_nodes=min_nodes,
            max_nodes=max_nodes,
            idle_seconds_before_scaledown=idle_seconds,
            vm_priority=priority,
        )
        target = ComputeTarget.create(ws, name, config)
        click.echo(f"✓ Compute target '{target.name}' {target.provisioning_state}")
    except MLStudioException as e:
        click.echo(f"✗ Failed to create compute target: {e.message}", err=True)
        raise click.Abort()


@compute.command('list')
@click.pass_context
def compute_list(ctx):
    """List compute targets"""
    from mlstudio.compute.target import ComputeTarget

    try:
        targets = ComputeTarget.list(_workspace(ctx))
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    click.echo(f"\nTotal compute targets: {len(targets)}\n")
    for target in targets:
        click.echo(f"{target.name} ({target.vm_size}) nodes {target.min_nodes}-{target.max_nodes}")


@compute.command('status')
@click.argument('name')
@click.pass_context
def compute_status(ctx, name):
    """Show node usage of a compute target"""
    from mlstudio.compute.target import ComputeTarget

    try:
        target = ComputeTarget(_workspace(ctx), name)
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    click.echo(f"\n=== Compute {target.name} ===\n")
    for key, value in target.get_status().items():
        click.echo(f"{key}: {value}")


@compute.command('delete')
@click.argument('name')
@click.confirmation_option(prompt='Delete this compute target?')
@click.pass_context
def compute_delete(ctx, name):
    """Delete a compute target"""
    from mlstudio.compute.target import ComputeTarget

    try:
        ComputeTarget(_workspace(ctx), name).delete()
        click.echo(f"✓ Compute target '{name}' deleted")
    except MLStudioException as e:
        click.echo(f"✗ Failed to delete compute target: {e.message}", err=True)
        raise click.Abort()


# ============================================================================
# Datasets
# ============================================================================

@cli.group()
def dataset():
    """Dataset commands"""
    pass


@dataset.command('register')
@click.argument('name')
@click.argument('path')
@click.option('--description', help='Dataset description')
@click.option('--separator', default=',', help='Field separator')
@click.option('--new-version', is_flag=True, help='Add a version if the content changed')
@click.pass_context
def dataset_register(ctx, name, path, description, separator, new_version):
    """Register delimited files (glob patterns allowed) as a dataset"""
    from mlstudio.data.dataset import Dataset

    try:
        ws = _workspace(ctx)
        data = Dataset.Tabular.from_delimited_files(path, separator=separator)
        registered = data.register(ws, name, description=description, create_new_version=new_version)
        click.echo(f"✓ Registered {registered.id} ({registered.record.num_rows} rows)")
    except MLStudioException as e:
        click.echo(f"✗ Failed to register dataset: {e.message}", err=True)
        raise click.Abort()


@dataset.command('list')
@click.pass_context
def dataset_list(ctx):
    """List datasets (latest versions)"""
    from mlstudio.data.dataset import Dataset

    try:
        records = Dataset.list(_workspace(ctx))
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    if not records:
        click.echo("No datasets found")
        return

    for record in records:
        click.echo(f"{record.id}  {record.num_rows} rows x {record.num_columns} columns")


@dataset.command('show')
@click.argument('name')
@click.option('--version', default='latest', help='Version number or latest')
@click.pass_context
def dataset_show(ctx, name, version):
    """Display a dataset version"""
    from mlstudio.data.dataset import Dataset

    try:
        record = Dataset.get_by_name(_workspace(ctx), name, version).record
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    click.echo(f"\n=== Dataset {record.id} ===\n")
    if record.description:
        click.echo(f"Description: {record.description}")
    click.echo(f"Rows: {record.num_rows}")
    click.echo(f"Registered: {record.registered_at}")
    click.echo("Schema:")
    for column, dtype in record.data_schema.items():
        click.echo(f"  {column}: {dtype}")


# ============================================================================
# Runs
# ============================================================================

@cli.group()
def run():
    """Experiment run commands"""
    pass


@run.command('submit')
@click.argument('experiment_name')
@click.option('--source-dir', default='.', type=click.Path(exists=True, file_okay=False), help='Source directory')
@click.option('--script', required=True, help='Entry script relative to the source directory')
@click.option('--arg', 'arguments', multiple=True, help='Script argument (repeatable)')
@click.option('--compute', 'compute_target', default='local', help='Compute target name')
@click.option('--tag', 'tags', multiple=True, help='Run tag as key=value (repeatable)')
@click.option('--wait', is_flag=True, help='Stream the log and wait for the run to finish')
@click.pass_context
def run_submit(ctx, experiment_name, source_dir, script, arguments, compute_target, tags, wait):
    """Submit a script run"""
    from mlstudio.training.experiment import Experiment
    from mlstudio.training.script_run_config import ScriptRunConfig

    try:
        ws = _workspace(ctx)
        config = ScriptRunConfig(
            source_directory=source_dir,
            script=script,
            arguments=list(arguments),
            compute_target=compute_target,
        )
        submitted = Experiment(ws, experiment_name).submit(
            config, tags={k: str(v) for k, v in _parse_assignments(tags).items()}
        )
        click.echo(f"✓ Submitted run {submitted.id}")
        if wait:
            submitted.wait_for_completion(show_output=True)
    except MLStudioException as e:
        click.echo(f"✗ Run submission failed: {e.message}", err=True)
        raise click.Abort()


@run.command('show')
@click.argument('run_id')
@click.pass_context
def run_show(ctx, run_id):
    """Display run details and metrics"""
    from mlstudio.training.run import Run

    try:
        handle = Run.get(_workspace(ctx), run_id)
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    details = handle.get_details()
    click.echo(f"\n=== Run {details['run_id']} ===\n")
    click.echo(f"Experiment: {details['experiment_name']}")
    click.echo(f"Type: {details['run_type']}")
    click.echo(f"Status: {details['status']}")
    if details.get('start_time'):
        click.echo(f"Started: {details['start_time']}")
    if details.get('end_time'):
        click.echo(f"Ended: {details['end_time']}")
    if details.get('error'):
        click.echo(f"Error: {details['error'].get('code')}: {details['error'].get('message')}")
    if details['tags']:
        click.echo(f"Tags: {json.dumps(details['tags'], indent=2)}")

    metrics = handle.get_metrics()
    if metrics:
        click.echo("\nMetrics:")
        for name, value in metrics.items():
            click.echo(f"  {name}: {value}")

    children = handle.get_children()
    if children:
        click.echo(f"\nChild runs: {len(children)}")
        for child in children:
            click.echo(f"  - {child.id} ({child.status})")


@run.command('list')
@click.argument('experiment_name')
@click.option('--limit', default=20, help='Maximum number of runs to display')
@click.option('--type', 'run_type', help='Only runs of this type')
@click.pass_context
def run_list(ctx, experiment_name, limit, run_type):
    """List runs of an experiment, newest first"""
    from mlstudio.training.experiment import Experiment

    try:
        experiment = Experiment(_workspace(ctx), experiment_name)
        if not experiment.exists:
            click.echo(f"✗ Experiment {experiment_name} not found", err=True)
            raise click.Abort()
        runs = []
        for handle in experiment.get_runs(type=run_type):
            runs.append(handle)
            if len(runs) >= limit:
                break
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    click.echo(f"\nRuns shown: {len(runs)}\n")
    for handle in runs:
        click.echo(f"{handle.id}  {handle.type}  {handle.status}")


@run.command('cancel')
@click.argument('run_id')
@click.pass_context
def run_cancel(ctx, run_id):
    """Request cancellation of a run"""
    from mlstudio.training.run import Run

    try:
        Run.get(_workspace(ctx), run_id).cancel()
        click.echo(f"✓ Cancellation requested for {run_id}")
    except MLStudioException as e:
        click.echo(f"✗ Failed to cancel run: {e.message}", err=True)
        raise click.Abort()


# ============================================================================
# Models
# ============================================================================

@cli.group()
def model():
    """Model registry commands"""
    pass


@model.command('list')
@click.option('--name', help='Only versions of this model')
@click.option('--latest', is_flag=True, help='Only the newest version of each model')
@click.pass_context
def model_list(ctx, name, latest):
    """List registered models"""
    from mlstudio.registry.model import Model

    try:
        models = Model.list(_workspace(ctx), name=name, latest=latest)
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    click.echo(f"\nTotal models: {len(models)}\n")
    for registered in models:
        click.echo(f"{registered.id}  run: {registered.run_id or 'N/A'}")


@model.command('show')
@click.argument('name')
@click.option('--version', type=int, help='Version (latest by default)')
@click.pass_context
def model_show(ctx, name, version):
    """Display a model version"""
    from mlstudio.registry.model import Model

    try:
        data = Model(_workspace(ctx), name, version).serialize()
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    click.echo(f"\n=== Model {data['id']} ===\n")
    if data.get('description'):
        click.echo(f"Description: {data['description']}")
    click.echo(f"File: {data['file_name']}")
    click.echo(f"Created: {data['created_at']}")
    if data.get('run_id'):
        click.echo(f"Run: {data['run_id']} ({data.get('experiment_name')})")
    if data['tags']:
        click.echo(f"Tags: {json.dumps(data['tags'], indent=2)}")
    if data['properties']:
        click.echo(f"Properties: {json.dumps(data['properties'], indent=2)}")


@model.command('download')
@click.argument('name')
@click.option('--version', type=int, help='Version (latest by default)')
@click.option('--target-dir', default='.', type=click.Path(file_okay=False), help='Destination directory')
@click.option('--overwrite', is_flag=True, help='Replace an existing file')
@click.pass_context
def model_download(ctx, name, version, target_dir, overwrite):
    """Download a model version"""
    from mlstudio.registry.model import Model

    try:
        path = Model(_workspace(ctx), name, version).download(target_dir, exist_ok=overwrite)
        click.echo(f"✓ Downloaded to {path}")
    except FileExistsError as e:
        click.echo(f"✗ {e}; pass --overwrite to replace it", err=True)
        raise click.Abort()
    except MLStudioException as e:
        click.echo(f"✗ Failed to download model: {e.message}", err=True)
        raise click.Abort()


# ============================================================================
# Pipelines
# ============================================================================

@cli.group()
def pipeline():
    """Published pipeline commands"""
    pass


@pipeline.command('list')
@click.option('--all', 'include_disabled', is_flag=True, help='Include disabled pipelines')
@click.pass_context
def pipeline_list(ctx, include_disabled):
    """List published pipelines"""
    from mlstudio.pipelines.published import PublishedPipeline

    try:
        pipelines = PublishedPipeline.list(_workspace(ctx), active_only=not include_disabled)
    except MLStudioException as e:
        click.echo(f"✗ {e.message}", err=True)
        raise click.Abort()

    if not pipelines:
        click.echo("No published pipelines found")
        return

    for published in pipelines:
        version = f" v{published.version}" if published.version else ""
        click.echo(f"{published.id}  {published.name}{version}  [{published.status}]")


@pipeline.command('submit')
@click.argument('pipeline_id')
@click.argument('experiment_name')
@click.option('--param', 'params', multiple=True, help='Pipeline parameter as key=value (repeatable)')
@click.option('--wait', is_flag=True, help='Wait for the pipeline run to finish')
@click.pass_context
def pipeline_submit(ctx, pipeline_id, experiment_name, params, wait):
    """Start a run of a published pipeline"""
    from mlstudio.pipelines.published import PublishedPipeline

    try:
        ws = _workspace(ctx)
        published = PublishedPipeline.get(ws, pipeline_id)
        submitted = published.submit(ws, experiment_name, pipeline_parameters=_parse_assignments(params))
        click.echo(f"✓ Submitted pipeline run {submitted.id}")
        if wait:
            details = submitted.wait_for_completion(raise_on_error=False)
            click.echo(f"Status: {details['status']}")
    except MLStudioException as e:
        click.echo(f"✗ Pipeline submission failed: {e.message}", err=True)
        raise click.Abort()


# ============================================================================
# Studio API
# ============================================================================

@cli.command()
@click.option('--host', help='Bind address (defaults to API_HOST)')
@click.option('--port', type=int, help='Port (defaults to API_PORT)')
@click.option('--reload', is_flag=True, help='Reload on code changes')
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int], reload: bool):
    """Run the studio HTTP API"""
    import uvicorn
    from mlstudio.config import settings

    if ctx.obj.get("workspace_name"):
        settings.api.workspace_name = ctx.obj["workspace_name"]
        settings.api.workspace_path = ctx.obj.get("workspace_path")

    host = host or settings.api.host
    port = port or settings.api.port
    logger.info("Starting studio API", host=host, port=port)

    uvicorn.run(
        "mlstudio.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.logging.level.lower()
    )


if __name__ == '__main__':
    cli()
