"""Configuration management using Pydantic settings"""

import os
import sys
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkspaceSettings(BaseSettings):
    """Workspace location configuration"""

    root_path: str = Field(default="mlstudio_workspaces", description="Directory holding all workspaces")
    config_dir: str = Field(default=".mlstudio", description="Directory name searched by Workspace.from_config")
    config_file: str = Field(default="config.json", description="Workspace config file name")

    model_config = SettingsConfigDict(
        env_prefix="WORKSPACE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class ComputeSettings(BaseSettings):
    """Compute target configuration"""

    max_nodes_quota: int = Field(default=16, description="Maximum nodes a single cluster may request")
    default_idle_seconds_before_scaledown: int = Field(default=1800, description="Default idle time before nodes are released")
    local_max_nodes: int = Field(default_factory=lambda: os.cpu_count() or 1, description="Nodes of the built-in local target")
    node_acquire_timeout: Optional[float] = Field(default=None, description="Seconds to wait for a free node (None waits forever)")
    vm_sizes: List[str] = Field(
        default=[
            "STANDARD_D2_V2",
            "STANDARD_D3_V2",
            "STANDARD_DS2_V2",
            "STANDARD_DS3_V2",
            "STANDARD_DS11_V2",
            "STANDARD_DS12_V2",
            "STANDARD_NC6",
            "LOCAL",
        ],
        description="VM sizes accepted by the provisioning configuration"
    )

    model_config = SettingsConfigDict(
        env_prefix="COMPUTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class RunSettings(BaseSettings):
    """Run execution configuration"""

    poll_interval_seconds: float = Field(default=0.2, description="Status poll interval for waiting on runs")
    default_max_run_duration_seconds: Optional[int] = Field(default=None, description="Default script timeout")
    outputs_dir: str = Field(default="outputs", description="Directory uploaded as run artifacts")
    logs_dir: str = Field(default="logs", description="Directory holding captured driver logs")
    python_executable: str = Field(default=sys.executable, description="Interpreter used for training scripts")

    model_config = SettingsConfigDict(
        env_prefix="RUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class SweepSettings(BaseSettings):
    """Hyperparameter sweep configuration"""

    policy_check_interval_seconds: float = Field(default=0.5, description="Interval between early-termination checks")
    max_total_runs_limit: int = Field(default=1000, description="Upper bound for max_total_runs")
    max_concurrent_runs_limit: int = Field(default=100, description="Upper bound for max_concurrent_runs")

    model_config = SettingsConfigDict(
        env_prefix="SWEEP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class AutoMLSettings(BaseSettings):
    """Automated model search configuration"""

    default_n_cross_validations: int = Field(default=5, description="Folds used when no validation size is given")
    ensemble_size: int = Field(default=5, description="Models combined by the voting ensemble")
    early_stopping_n_iters: int = Field(default=10, description="Iterations without improvement before stopping")
    random_state: Optional[int] = Field(default=None, description="Seed for algorithm and parameter sampling")
    explanation_repeats: int = Field(default=5, description="Permutation repeats for feature importance")

    model_config = SettingsConfigDict(
        env_prefix="AUTOML_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class LoggingSettings(BaseSettings):
    """Logging configuration"""

    level: str = Field(default="INFO", description="Logging level")
    format: str = Field(default="json", description="Log format (json or text)")
    output: str = Field(default="stdout", description="Log output (stdout or file path)")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class APISettings(BaseSettings):
    """Studio API configuration"""

    host: str = Field(default="127.0.0.1", description="API host")
    port: int = Field(default=8000, description="API port")
    workspace_name: Optional[str] = Field(default=None, description="Workspace served by the API")
    workspace_path: Optional[str] = Field(default=None, description="Root path of the served workspace")

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings"""

    environment: str = Field(default="development", description="Environment (development, staging, production)")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    compute: ComputeSettings = Field(default_factory=ComputeSettings)
    run: RunSettings = Field(default_factory=RunSettings)
    sweep: SweepSettings = Field(default_factory=SweepSettings)
    automl: AutoMLSettings = Field(default_factory=AutoMLSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: APISettings = Field(default_factory=APISettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


# Global settings instance
settings = Settings()
