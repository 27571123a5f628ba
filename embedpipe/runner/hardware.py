"""
Hardware capability query for the model runner.

Core code only ever sees an Accelerator value; which torch backend sits
behind it is decided here.
"""
import enum
import logging
import platform

from embedpipe.errors import HardwareUnsupported

logger = logging.getLogger(__name__)


class Accelerator(enum.Enum):
    CPU = 'cpu'
    GPU = 'cuda'
    # Apple Silicon (Metal Performance Shaders)
    NEURAL = 'mps'

    @property
    def device(self) -> str:
        return self.value


_ALIASES = {
    'cpu': Accelerator.CPU,
    'cuda': Accelerator.GPU,
    'gpu': Accelerator.GPU,
    'mps': Accelerator.NEURAL,
    'neural': Accelerator.NEURAL,
}


def is_apple_silicon() -> bool:
    return platform.system() == 'Darwin' and platform.machine() == 'arm64'


def detect_accelerators() -> set[Accelerator]:
    """Return every accelerator torch can use on this machine. CPU is always present."""
    import torch

    found = {Accelerator.CPU}
    if torch.cuda.is_available():
        found.add(Accelerator.GPU)
    mps = getattr(torch.backends, 'mps', None)
    if mps is not None and mps.is_available():
        found.add(Accelerator.NEURAL)
    elif is_apple_silicon():
        logger.warning("Apple Silicon detected but this torch build has no MPS support, using CPU")
    return found


def select_device(preferred: str = 'auto', available: set[Accelerator] | None = None,
                  allow_cpu_fallback: bool = True) -> Accelerator:
    """
    Pick the accelerator to run on.

    `auto` takes the best available one (GPU, then NEURAL, then CPU). A named
    accelerator that is not available falls back to CPU, or raises
    HardwareUnsupported when `allow_cpu_fallback` is False.
    """
    if available is None:
        available = detect_accelerators()

    key = (preferred or 'auto').strip().lower()
    if key == 'auto':
        for candidate in (Accelerator.GPU, Accelerator.NEURAL, Accelerator.CPU):
            if candidate in available:
                logger.info(f"Auto-selected accelerator: {candidate.name} ({candidate.device})")
                return candidate
        raise HardwareUnsupported("No usable accelerator found, not even CPU")

    if key not in _ALIASES:
        raise HardwareUnsupported(f"Unknown device '{preferred}' (expected auto, cpu, cuda or mps)")

    wanted = _ALIASES[key]
    if wanted in available:
        return wanted

    if allow_cpu_fallback and Accelerator.CPU in available:
        logger.warning(f"Requested accelerator {wanted.name} is not available, falling back to CPU")
        return Accelerator.CPU

    raise HardwareUnsupported(
        f"Requested accelerator {wanted.name} ({wanted.device}) is not available "
        f"and CPU fallback is disabled (available: {sorted(a.name for a in available)})"
    )
