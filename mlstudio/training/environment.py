"""Python environments that runs execute in."""

import logging
from importlib import metadata
from pathlib import Path
from typing import Optional, Dict, Any, List

from packaging.requirements import InvalidRequirement, Requirement

from mlstudio.exceptions import EnvironmentBuildError

logger = logging.getLogger(__name__)


class PythonSection:
    """Python dependencies and variables of an environment."""

    def __init__(self):
        self.pip_packages: List[str] = []
        self.environment_variables: Dict[str, str] = {}


class Environment:
    """
    Named set of package requirements for a run.

    Building an environment checks every requirement against the
    distributions installed for the run interpreter; a missing package or a
    version outside the specifier fails the build.
    """

    def __init__(self, name: str):
        self.name = name
        self.python = PythonSection()

    def __repr__(self) -> str:
        return f"Environment(name={self.name!r}, pip_packages={self.python.pip_packages!r})"

    @classmethod
    def from_pip_requirements(cls, name: str, file_path: str) -> "Environment":
        """Create an environment from a requirements file, ignoring comments and options."""
        env = cls(name)
        with open(Path(file_path), 'r') as f:
            for line in f:
                line = line.split("#", 1)[0].strip()
                if line and not line.startswith("-"):
                    env.python.pip_packages.append(line)
        return env

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pip_packages": list(self.python.pip_packages),
            "environment_variables": dict(self.python.environment_variables),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Environment"]:
        if not data:
            return None
        env = cls(data["name"])
        env.python.pip_packages = list(data.get("pip_packages", []))
        env.python.environment_variables = dict(data.get("environment_variables", {}))
        return env

    def check_requirements(self) -> List[str]:
        """
        Compare the requirements with installed distributions.

        Returns:
            Human-readable problems; empty when the environment is satisfied
        """
        problems = []

        for spec in self.python.pip_packages:
            try:
                requirement = Requirement(spec)
            except InvalidRequirement as e:
                problems.append(f"invalid requirement '{spec}': {e}")
                continue

            if requirement.marker is not None and not requirement.marker.evaluate():
                continue

            try:
                installed = metadata.version(requirement.name)
            except metadata.PackageNotFoundError:
                problems.append(f"{requirement.name} is not installed")
                continue

            if requirement.specifier and not requirement.specifier.contains(installed, prereleases=True):
                problems.append(
                    f"{requirement.name}=={installed} does not satisfy '{requirement.specifier}'"
                )

        return problems

    def build(self) -> None:
        """
        Validate the environment.

        Raises:
            EnvironmentBuildError: If any requirement is not satisfied
        """
        problems = self.check_requirements()
        if problems:
            raise EnvironmentBuildError(
                f"Environment '{self.name}' could not be built: {'; '.join(problems)}",
                details={"environment": self.name, "problems": problems}
            )
        logger.debug(f"Environment '{self.name}' satisfied ({len(self.python.pip_packages)} packages)")
