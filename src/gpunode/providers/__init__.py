"""External collaborator interfaces and their concrete adapters."""

from gpunode.providers.base import (
	AcceleratorProvider,
	IdentityStore,
	Registrar,
	WorkloadProvider,
)
from gpunode.providers.docker import DockerWorkloadProvider
from gpunode.providers.identity import FileIdentityStore, HttpRegistrar, build_registration_request
from gpunode.providers.nvidia_smi import NvidiaSmiAcceleratorProvider

__all__ = [
	"AcceleratorProvider",
	"DockerWorkloadProvider",
	"FileIdentityStore",
	"HttpRegistrar",
	"IdentityStore",
	"NvidiaSmiAcceleratorProvider",
	"Registrar",
	"WorkloadProvider",
	"build_registration_request",
]
