#!/usr/bin/env python3
"""Bring up the Vagrant-based CaaSP cluster sized from a config.yml model."""

from __future__ import annotations

import argparse
import logging
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, NoReturn, Optional, Tuple

try:
    import yaml
except ImportError as exc:  # pragma: no cover - import guard
    sys.stderr.write("PyYAML is required to run deploy_caasp. Install it with 'pip install pyyaml'.\n")
    raise SystemExit(1) from exc


DEFAULT_MODEL = "minimal"
DEFAULT_VERBOSITY = 1
AIRGAP_SCRIPT = "/vagrant/deploy/100.prep_airgap.sh"
DEPLOY_SCRIPT = "/vagrant/deploy/99.run-all.sh"
NODE_FIELDS = ("count", "memory", "cpus")


class DeployError(Exception):
    """Raised when a recoverable deploy error occurs."""


class DeployAborted(DeployError):
    """Raised when the operator declines to continue."""


class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[0;36m",
        logging.INFO: "\033[0;32m",
        logging.WARNING: "\033[1;33m",
        logging.ERROR: "\033[0;31m",
        logging.CRITICAL: "\033[0;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool) -> None:
        super().__init__("[%(asctime)s] %(levelname)s %(message)s", datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base
        color = self.COLORS.get(record.levelno, "")
        return f"{color}{base}{self.RESET}"


def build_logger() -> logging.Logger:
    logger = logging.getLogger("caasp.deploy")
    if not logger.handlers:
        logger.setLevel(logging.INFO)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ColorFormatter(sys.stderr.isatty()))
        logger.addHandler(handler)
        logger.propagate = False
    return logger


# ------------------------------------------------------------------ Sizing model
@dataclass(frozen=True)
class Role:
    key: str
    segment: str
    label: str
    count_var: str


ROLES: Tuple[Role, ...] = (
    Role("master", "master", "Masters", "NMASTERS"),
    Role("worker", "worker", "Workers", "NWORKERS"),
    Role("loadbalancer", "lb", "Load Balancers", "NLOADBAL"),
    Role("storage", "storage", "Storage Nodes", "NSTORAGE"),
)


@dataclass(frozen=True)
class NodeSpec:
    count: int
    memory: int
    cpus: int

    @property
    def total_memory(self) -> int:
        return self.memory * self.count

    @property
    def total_cpus(self) -> int:
        return self.cpus * self.count


@dataclass(frozen=True)
class Profile:
    """Per-role VM sizing for one config.yml model."""

    name: str
    master: NodeSpec
    worker: NodeSpec
    loadbalancer: NodeSpec
    storage: NodeSpec

    @classmethod
    def from_config(cls, name: str, data: Any) -> "Profile":
        if not isinstance(data, dict):
            raise DeployError(f"[Config] Model {name} must be a YAML map")
        nodes = data.get("nodes")
        if not isinstance(nodes, dict):
            raise DeployError(f"[Config] Model {name} must define a 'nodes' map")

        specs: Dict[str, NodeSpec] = {}
        for role in ROLES:
            entry = nodes.get(role.key)
            if not isinstance(entry, dict):
                raise DeployError(f"[Config] Missing key {name}_nodes_{role.key}")
            values = {}
            for field in NODE_FIELDS:
                key = f"{name}_nodes_{role.key}_{field}"
                if field not in entry:
                    raise DeployError(f"[Config] Missing key {key}")
                value = entry[field]
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise DeployError(f"[Config] {key} must be a non-negative integer value={value!r}")
                values[field] = value
            specs[role.key] = NodeSpec(**values)
        return cls(name=name, **specs)

    def node(self, role: Role) -> NodeSpec:
        return getattr(self, role.key)

    @property
    def memory_needed(self) -> int:
        return sum(self.node(role).total_memory for role in ROLES)

    @property
    def total_cpus(self) -> int:
        return sum(self.node(role).total_cpus for role in ROLES)

    def flatten(self) -> Dict[str, int]:
        flat: Dict[str, int] = {}
        for role in ROLES:
            spec = self.node(role)
            for field in NODE_FIELDS:
                flat[f"{self.name}_nodes_{role.key}_{field}"] = getattr(spec, field)
        return flat


@dataclass(frozen=True)
class DeployOptions:
    model: str = DEFAULT_MODEL
    full: bool = False
    air_gapped: bool = False
    memory_check: bool = True
    dry_run: bool = False
    verbosity: int = DEFAULT_VERBOSITY
    params: Tuple[str, ...] = ()


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise DeployError(f"[Config] Model config {path} does not exist")

    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise DeployError(f"[Config] Failed to parse {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise DeployError(f"[Config] {path} must be a YAML map of models")
    return {str(name): value for name, value in data.items()}


def is_confirmed(answer: str) -> bool:
    return answer.strip().lower() in ("y", "yes")


# ------------------------------------------------------------------ Deployer
class Deployer:
    def __init__(
        self,
        options: DeployOptions,
        root: Optional[Path] = None,
        prompt: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.options = options

        # Environment defaults
        self.vm_prefix = os.environ.get("CAASP_VM_PREFIX", "caasp4")
        self.deploy_user = os.environ.get("CAASP_DEPLOY_USER", "sles")

        # Filesystem layout
        self.project_root = Path(root) if root else Path.cwd()
        self.config_path = self.project_root / "config.yml"
        self.env_conf_path = self.project_root / "caasp_env.conf"
        self.airgap_dir = self.project_root / "air-gap.d"
        self.registries_conf_path = self.airgap_dir / "air-gapped-registries.conf"

        self.prompt = prompt or input

        # Handed to every vagrant call so the Vagrantfile can read the model
        self.env = os.environ.copy()
        self.env["CAASP_CONFIG_MODEL"] = options.model
        self.env["SKUBA_VERBOSITY"] = str(options.verbosity)

        self.logger = build_logger()
        self.logger.setLevel(logging.DEBUG if options.verbosity > 1 else logging.INFO)

    def vm_name(self, role: Role, index: int) -> str:
        return f"{self.vm_prefix}-{role.segment}-{index}"

    def vm_names(self, profile: Profile, role: Role) -> List[str]:
        return [self.vm_name(role, index) for index in range(1, profile.node(role).count + 1)]

    # --------------------------------------------------------- Execution flow
    def execute(self) -> None:
        profile = self.validate_model()
        self.check_memory(profile)
        self.print_summary(profile)
        self.write_env_conf(profile)
        self.check_air_gap()
        self.check_full_deployment(profile)

        if self.options.dry_run:
            print("Dry run complete")
            return

        self.ensure_command("vagrant")
        self.bring_up_vms(profile)
        if self.options.air_gapped:
            self.prepare_air_gap(profile)
        if self.options.full:
            self.run_full_deployment()
        self.print_banner()

    # ------------------------------------------------------- Model validation
    def validate_model(self) -> Profile:
        config = self.load_models()
        model = self.options.model
        if model not in config:
            valid = " ".join(config)
            print(f"Invalid model option, must be one of '{valid}'.")
            print(f"Update {self.config_path.name} if needed.")
            raise DeployError(f"[Config] Unknown model name={model}")

        profile = Profile.from_config(model, config[model])
        self.logger.info(f"[Config] Using model name={model} path={self.config_path}")
        return profile

    def load_models(self) -> Dict[str, Any]:
        return load_config(self.config_path)

    # ---------------------------------------------------------- Host resources
    def check_memory(self, profile: Profile) -> None:
        if not self.options.memory_check:
            self.logger.info("[Memory] Skipping host memory check reason=ignore-memory")
            return

        needed = profile.memory_needed
        available = self.available_memory()
        if needed <= available:
            self.logger.info(f"[Memory] Host has enough memory needed={needed}MB available={available}MB")
            return

        try:
            answer = self.prompt(f"The configuration needs {needed}MB but the host only has {available}MB available, do you want to continue [y/N] ")
        except EOFError:
            answer = ""
        if not is_confirmed(answer):
            raise DeployAborted(f"[Memory] Declined over-allocation needed={needed}MB available={available}MB")
        self.logger.warning(f"[Memory] Continuing with over-allocation needed={needed}MB available={available}MB")

    def available_memory(self) -> int:
        self.ensure_command("free")
        output = self.run(["free", "-m"], capture_output=True).stdout
        lines = output.splitlines()
        # Mem: total used free shared buff/cache available
        if len(lines) < 2:
            raise DeployError("[Memory] Unexpected 'free -m' output")
        columns = lines[1].split()
        if len(columns) < 7 or not columns[6].isdigit():
            raise DeployError(f"[Memory] Cannot read available memory from 'free -m' line={lines[1].strip()!r}")
        return int(columns[6])

    def print_summary(self, profile: Profile) -> None:
        print(f"Deploy CAASP with the CAASP_CONFIG_MODEL={profile.name}")
        for role in ROLES:
            spec = profile.node(role)
            print(f"  {f'{role.label}={spec.count}':<18}CPUS={spec.cpus} MEM={spec.memory}")
        print(f"TOTALS CPU={profile.total_cpus} MEM={profile.memory_needed}")
        print("")

    # -------------------------------------------------- Downstream environment
    def write_env_conf(self, profile: Profile) -> None:
        values: Dict[str, Any] = {
            "CAASP_CONFIG_MODEL": profile.name,
            "SKUBA_VERBOSITY": self.options.verbosity,
        }
        for role in ROLES:
            values[role.count_var] = profile.node(role).count
        values.update(profile.flatten())

        lines = [f"# Generated by deploy_caasp from {self.config_path.name}"]
        lines.extend(f"export {key}={shlex.quote(str(value))}" for key, value in values.items())
        self.env_conf_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.logger.info(f"[Config] Wrote environment file path={self.env_conf_path}")

    # ------------------------------------------------------- Preconditions
    def check_air_gap(self) -> None:
        if not self.options.air_gapped:
            print("Default registry location : ensure access to registry.suse.com for installation images")
            return

        if not self.registries_conf_path.is_file():
            print("Air-gap command-line option specified but missing required configuration file(s).")
            print(f"See ./{self.airgap_dir.name}/README.md for information.")
            print("Exiting")
            raise DeployError(f"[AirGap] Missing registries config path={self.registries_conf_path}")

        print("Custom Air-gapped Registries configuration found!!")
        print("Configuring nodes for air-gap after VMs are up.")

    def check_full_deployment(self, profile: Profile) -> None:
        if not self.options.full:
            print("Not running deployment scripts after VMs are up.")
            return

        if profile.master.count < 1:
            raise DeployError(f"[Deploy] Full deployment needs at least one master model={profile.name}")
        print("Do full deployment after VMs are up.")

    # ------------------------------------------------------------ Vagrant ops
    def bring_up_vms(self, profile: Profile) -> None:
        for role in ROLES:
            names = self.vm_names(profile, role)
            self.logger.info(f"[Vagrant] Deploying {len(names)} {role.label.lower()}")
            for name in names:
                self.logger.info(f"[Vagrant] Starting vm={name}")
                self.run(["vagrant", "up", name])

    def prepare_air_gap(self, profile: Profile) -> None:
        self.logger.info("[AirGap] Preparing air-gapped setup")
        for role in ROLES[:2]:
            self.logger.info(f"[AirGap] Modifying {role.label.lower()}")
            for name in self.vm_names(profile, role):
                self.ssh(name, f"sudo {AIRGAP_SCRIPT}")
        self.logger.info("[AirGap] Finished air-gapped setup")

    def run_full_deployment(self) -> None:
        name = self.vm_name(ROLES[0], 1)
        self.logger.info(f"[Deploy] Running cluster deployment vm={name} user={self.deploy_user}")
        self.ssh(name, f"sudo su - {self.deploy_user} -c {DEPLOY_SCRIPT}")

    def ssh(self, name: str, command: str) -> subprocess.CompletedProcess[str]:
        return self.run(["vagrant", "ssh", name, "-c", command])

    def print_banner(self) -> None:
        first_master = self.vm_name(ROLES[0], 1)
        print("Happy CaaSPing!")
        print(f"vagrant ssh {first_master}")
        print(f"sudo su - {self.deploy_user}")
        print("See scripts in the /vagrant/deploy directory for deployment guide steps")
        print(f"...or run {Path(sys.argv[0]).name} --full to have your cluster auto-deployed")

    # --------------------------------------------------------------- Helpers
    def ensure_command(self, name: str) -> None:
        if shutil.which(name) is None:
            raise DeployError(f"[Deps] {name} is required but not found in PATH")

    def run(
        self,
        cmd: List[str],
        *,
        check: bool = True,
        capture_output: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        self.logger.debug(f"[Run] {shlex.join(cmd)}")
        return subprocess.run(
            cmd,
            check=check,
            text=True,
            capture_output=capture_output,
            env=self.env,
        )


# -------------------------------------------------------------------- CLI
SWITCH_OPTIONS = ("-f", "--full", "-a", "--air-gapped", "-i", "--ignore-memory", "-t", "--test")
VALUE_OPTIONS = ("-m", "--model", "-v", "--verbose")
HELP_OPTIONS = ("-h", "-?", "--help")


class DeployArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def uint8(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid verbosity {value!r}") from None
    if not 0 <= number <= 255:
        raise argparse.ArgumentTypeError(f"verbosity must be between 0 and 255, got {number}")
    return number


def build_parser() -> DeployArgumentParser:
    parser = DeployArgumentParser(
        prog="deploy_caasp",
        description="Bring up CaaSP Vagrant machines sized from a config.yml model.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL, help=f'Which config.yml model to use for vm sizing (default "{DEFAULT_MODEL}")')
    parser.add_argument("-f", "--full", action="store_true", help="Attempt to bring the machines up and deploy the cluster")
    parser.add_argument(
        "-a",
        "--air-gapped",
        dest="air_gapped",
        action="store_true",
        help="Setup CaaSP nodes with substitute registries (for deployment and/or private image access)",
    )
    parser.add_argument(
        "-i",
        "--ignore-memory",
        dest="memory_check",
        action="store_false",
        help="Don't prompt when over allocating memory",
    )
    parser.add_argument("-t", "--test", dest="dry_run", action="store_true", help="Do a dry run, don't actually deploy the vms")
    parser.add_argument(
        "-v",
        "--verbose",
        dest="verbosity",
        type=uint8,
        default=DEFAULT_VERBOSITY,
        metavar="UINT8",
        help=f"Verbosity level to pass to skuba -v (default is {DEFAULT_VERBOSITY})",
    )
    parser.add_argument(*HELP_OPTIONS, action="help", help="Show help")
    parser.add_argument("params", nargs="*", help=argparse.SUPPRESS)
    return parser


def split_at_double_dash(tokens: List[str]) -> Tuple[List[str], List[str]]:
    if "--" not in tokens:
        return tokens, []
    index = tokens.index("--")
    return tokens[:index], tokens[index + 1 :]


def find_unsupported_flag(tokens: List[str]) -> Optional[str]:
    """Return the first dash-prefixed token that is not a known option.

    Scans left to right so help still wins when it comes first. Values of
    --model and --verbose are skipped; attached forms such as --model=x or
    -mx are not options.
    """
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in HELP_OPTIONS:
            return None
        if token in VALUE_OPTIONS:
            index += 2
            continue
        if token.startswith("-") and token not in SWITCH_OPTIONS:
            return token
        index += 1
    return None


def parse_args(argv: Optional[List[str]] = None) -> DeployOptions:
    tokens = list(sys.argv[1:] if argv is None else argv)
    head, tail = split_at_double_dash(tokens)

    parser = build_parser()
    flag = find_unsupported_flag(head)
    if flag is not None:
        parser.error(f"Unsupported flag {flag}")
    args, extras = parser.parse_known_args(head)

    return DeployOptions(
        model=args.model,
        full=args.full,
        air_gapped=args.air_gapped,
        memory_check=args.memory_check,
        dry_run=args.dry_run,
        verbosity=args.verbosity,
        params=tuple(args.params) + tuple(extras) + tuple(tail),
    )


def main(argv: Optional[List[str]] = None) -> None:
    options = parse_args(argv)
    deployer = Deployer(options)
    try:
        deployer.execute()
    except DeployAborted as exc:
        raise SystemExit(1) from exc
    except (DeployError, subprocess.CalledProcessError) as exc:
        message = str(exc)
        if isinstance(exc, subprocess.CalledProcessError) and exc.stderr:
            message = f"{message}\n{exc.stderr.strip()}"
        deployer.logger.error(message)
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
