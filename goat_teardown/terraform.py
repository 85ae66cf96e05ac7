import logging
import subprocess

logger = logging.getLogger(__name__)


class TerraformError(Exception):
    """A terraform command failed where the run cannot continue."""


class Terraform:
    """Thin wrapper running the terraform CLI inside one module directory"""

    def __init__(self, working_dir, binary='terraform'):
        self.working_dir = str(working_dir)
        self.binary = binary

    def run(self, *args):
        command = [self.binary, *args]
        logger.debug(f"Running command: {' '.join(command)}")
        try:
            result = subprocess.run(command, cwd=self.working_dir, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise TerraformError(f"{self.binary} not found: {e}")
        if result.returncode != 0:
            logger.debug(f"Command failed with exit code {result.returncode}: {result.stderr.strip()}")
        return result

    def ok(self, *args):
        return self.run(*args).returncode == 0

    def select_workspace(self, name):
        """Select the workspace, creating it when missing"""
        if self.ok('workspace', 'select', name):
            return
        result = self.run('workspace', 'new', name)
        if result.returncode != 0:
            raise TerraformError(f"Could not select or create workspace {name}: {result.stderr.strip()}")
        logger.info(f"Created terraform workspace {name}")

    def in_state(self, address):
        return self.ok('state', 'show', address)

    def import_resource(self, address, resource_id, variables=None):
        args = ['import', '-input=false']
        for key, value in (variables or {}).items():
            args.append(f'-var={key}={value}')
        args.extend([address, resource_id])
        return self.ok(*args)
