# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Resolution of VM selectors into concrete VM sets."""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

from fleetsched.core.models.job import SelectorType, VMSelector
from fleetsched.core.models.vm import VirtualMachine
from fleetsched.core.observability import get_logger
from fleetsched.core.services.inventory import TagLookup, VMInventory
from fleetsched.core.tags import parse

logger = get_logger(__name__)

NO_SELECTOR_WARNING = (
    "No VM selectors defined for job, selecting ALL VMs. "
    "This may not be intended."
)


def glob_to_regex(pattern: str, ignore_case: bool = True) -> "re.Pattern[str]":
    """Compile a ``*``/``?`` glob into an anchored regex.

    :param pattern: Glob pattern. ``*`` matches any run, ``?`` one character.
    :param ignore_case: Match case-insensitively.
    :returns: Compiled regular expression.
    """
    body = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char) for char in pattern
    )
    return re.compile(f"^{body}$", re.IGNORECASE if ignore_case else 0)


@dataclass
class SelectionResult:
    """Outcome of resolving a job's selectors."""

    vms: List[VirtualMachine] = field(default_factory=list)
    matched_all_by_default: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def vm_ids(self) -> List[int]:
        return [vm.id for vm in self.vms]


class VMSelectorResolver:
    """Turns selector definitions into the list of VMs a job acts on.

    The inventory is read once per resolution and each VM's tags are
    looked up at most once, however many selectors reference them.
    """

    def __init__(self, inventory: VMInventory, tag_lookup: TagLookup) -> None:
        """Initialize the resolver.

        :param inventory: Source of the VM list
        :param tag_lookup: Source of per-VM tags
        """
        self.inventory = inventory
        self.tag_lookup = tag_lookup

    def resolve(self, selectors: Sequence[VMSelector]) -> SelectionResult:
        """Resolve selectors to VMs.

        :param selectors: Selectors of a job. Empty means every VM.
        :returns: VMs in inventory order, de-duplicated, with diagnostics.
        """
        all_vms = self.inventory.list_vms()

        if not selectors:
            logger.warning(NO_SELECTOR_WARNING)
            return SelectionResult(
                vms=list(all_vms),
                matched_all_by_default=True,
                warnings=[NO_SELECTOR_WARNING],
            )

        result = SelectionResult()
        tag_cache: Dict[int, Set[str]] = {}

        def tags_of(vm_id: int) -> Set[str]:
            if vm_id not in tag_cache:
                tag_cache[vm_id] = set(self.tag_lookup.get_tags(vm_id))
            return tag_cache[vm_id]

        selected: Set[int] = set()
        for selector in selectors:
            matched = self._select(selector, all_vms, tags_of, result.warnings)
            if selector.exclude_expression and selector.exclude_expression.strip():
                excluded = self._match_tag_expression(
                    selector.exclude_expression, all_vms, tags_of, result.warnings
                )
                matched -= excluded
            selected |= matched

        seen: Set[int] = set()
        for vm in all_vms:
            if vm.id in selected and vm.id not in seen:
                seen.add(vm.id)
                result.vms.append(vm)

        logger.info(f"Selected {len(result.vms)} VM(s) using {len(selectors)} selector(s)")
        return result

    def _select(
        self,
        selector: VMSelector,
        all_vms: List[VirtualMachine],
        tags_of: Callable[[int], Set[str]],
        warnings: List[str],
    ) -> Set[int]:
        selector_type = SelectorType(selector.type)
        if selector_type == SelectorType.ALL:
            return {vm.id for vm in all_vms}
        if selector_type == SelectorType.VM_LIST:
            return self._parse_vm_list(selector.value)
        if selector_type == SelectorType.NAME_PATTERN:
            regex = glob_to_regex(selector.value.strip())
            return {vm.id for vm in all_vms if vm.name and regex.match(vm.name)}
        return self._match_tag_expression(selector.value, all_vms, tags_of, warnings)

    @staticmethod
    def _parse_vm_list(value: str) -> Set[int]:
        ids: Set[int] = set()
        for token in value.split(","):
            token = token.strip()
            if not token:
                continue
            try:
                ids.add(int(token))
            except ValueError:
                logger.warning(f"Invalid VM ID in selector: '{token}'")
        return ids

    def _match_tag_expression(
        self,
        expression: Optional[str],
        all_vms: List[VirtualMachine],
        tags_of: Callable[[int], Set[str]],
        warnings: List[str],
    ) -> Set[int]:
        """Evaluate a tag expression, falling back to a literal tag match.

        :returns: Ids of matching VMs.
        """
        if expression is None or not expression.strip():
            return set()

        try:
            tag_expr = parse(expression)
            matched = {vm.id for vm in all_vms if tag_expr.evaluate(tags_of(vm.id))}
            logger.debug(f"Tag expression '{expression}' matched {len(matched)} VM(s)")
            return matched
        except Exception as e:
            literal = expression.strip()
            message = (
                f"Failed to evaluate tag expression '{expression}' ({e}); "
                f"falling back to exact tag match on '{literal}'"
            )
            logger.warning(message)
            warnings.append(message)

        try:
            return {vm.id for vm in all_vms if literal in tags_of(vm.id)}
        except Exception as e:
            logger.error(f"Literal tag match for '{literal}' also failed: {e}")
            return set()
