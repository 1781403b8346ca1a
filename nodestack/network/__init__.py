"""Network segmentation package for port classification and enforcement."""

from .policy import (
	ListenerObservation,
	ListenerViolation,
	NetworkPolicyPlan,
	PortBinding,
	ProxyRoute,
	network_address_is_in_overlay,
	network_assign_overlay_addresses,
	network_audit_listeners,
	network_build_policy,
	network_classify,
	network_find_violations,
	network_write_policy,
)

__all__ = [
	"ListenerObservation",
	"ListenerViolation",
	"NetworkPolicyPlan",
	"PortBinding",
	"ProxyRoute",
	"network_address_is_in_overlay",
	"network_assign_overlay_addresses",
	"network_audit_listeners",
	"network_build_policy",
	"network_classify",
	"network_find_violations",
	"network_write_policy",
]
