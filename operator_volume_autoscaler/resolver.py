"""Turn a policy's target into the PersistentVolumeClaims it applies to."""

import logging

from kubernetes.client.exceptions import ApiException

logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    """The target couldn't be turned into a list of PVCs."""


class TargetNotSpecifiedError(ResolutionError):
    """Neither target.name nor target.selector is set, or both are. A configuration error."""


class PVCNotFoundError(ResolutionError):
    pass


class InvalidSelectorError(ResolutionError):
    pass


def resolve_pvcs(v1, policy, request_timeout=None):
    """Return the list of V1PersistentVolumeClaim targeted by the policy.

    A selector that matches nothing resolves to an empty list. A named PVC
    that doesn't exist raises PVCNotFoundError.
    """
    if policy.target_name and policy.target_selector:
        raise TargetNotSpecifiedError("target must specify only one of name or selector")

    if policy.target_name:
        logger.debug(f"Resolving PVC {policy.namespace}.{policy.target_name} by name")
        try:
            pvc = v1.read_namespaced_persistent_volume_claim(
                name             = policy.target_name,
                namespace        = policy.namespace,
                _request_timeout = request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                raise PVCNotFoundError(f"PVC {policy.namespace}.{policy.target_name} not found") from e
            raise ResolutionError(f"reading PVC {policy.namespace}.{policy.target_name}: {e.reason}") from e
        return [pvc]

    if policy.target_selector:
        label_selector = selector_to_string(policy.target_selector)
        logger.debug(f"Resolving PVCs in {policy.namespace} matching '{label_selector}'")
        try:
            pvc_list = v1.list_namespaced_persistent_volume_claim(
                namespace        = policy.namespace,
                label_selector   = label_selector,
                _request_timeout = request_timeout
            )
        except ApiException as e:
            raise ResolutionError(f"listing PVCs in {policy.namespace}: {e.reason}") from e
        return list(pvc_list.items)

    raise TargetNotSpecifiedError("target must specify either name or selector")


def selector_to_string(selector):
    """Convert a LabelSelector dict to the set-based string the API server accepts.

    {'matchLabels': {'app': 'db'}, 'matchExpressions': [{'key': 'tier', 'operator': 'In', 'values': ['a', 'b']}]}
    becomes 'app=db,tier in (a,b)'.
    """
    requirements = []
    for key, value in sorted((selector.get('matchLabels') or {}).items()):
        requirements.append(f"{key}={value}")

    for expression in selector.get('matchExpressions') or []:
        key = expression.get('key')
        operator = expression.get('operator')
        values = expression.get('values') or []
        if not key:
            raise InvalidSelectorError("matchExpressions entry has no key")
        if operator in ('In', 'NotIn'):
            if not values:
                raise InvalidSelectorError(f"operator {operator} on {key} needs at least one value")
            requirements.append(f"{key} {operator.lower()} ({','.join(sorted(values))})")
        elif operator in ('Exists', 'DoesNotExist'):
            if values:
                raise InvalidSelectorError(f"operator {operator} on {key} takes no values")
            requirements.append(key if operator == 'Exists' else f"!{key}")
        else:
            raise InvalidSelectorError(f"unknown selector operator {operator!r}")

    if not requirements:
        # An empty selector matches everything, which is never what a policy means
        raise InvalidSelectorError("selector has no matchLabels or matchExpressions")
    return ','.join(requirements)
