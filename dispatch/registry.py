"""Immutable registry of dispatchable commands with help formatting."""

from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from core.exceptions import CommandNotFoundError, RegistryError
from dispatch.descriptor import CommandDescriptor
from security.input_validator import describe_default


class CommandRegistry:
    """
    Case-insensitive name to descriptor map plus a category index.

    Built once at startup from every provider's command table.
    """

    def __init__(self, descriptors: Iterable[CommandDescriptor]):
        commands: Dict[str, CommandDescriptor] = {}
        categories: Dict[str, List[CommandDescriptor]] = {}

        for descriptor in descriptors:
            key = descriptor.name.casefold()
            if key in commands:
                raise RegistryError(f"Duplicate command name: '{descriptor.name}'")
            commands[key] = descriptor
            categories.setdefault(descriptor.category.casefold(), []).append(descriptor)

        self._commands = commands
        self._categories: Dict[str, Tuple[CommandDescriptor, ...]] = {
            cat: tuple(sorted(cmds, key=lambda c: c.name)) for cat, cmds in categories.items()
        }

        logger.info(f"Command registry built: {len(commands)} commands in {len(categories)} categories")

    @property
    def count(self) -> int:
        return len(self._commands)

    def find(self, name: str) -> Optional[CommandDescriptor]:
        return self._commands.get((name or "").strip().casefold())

    def get_categories(self) -> List[str]:
        return sorted(self._categories)

    def get_by_category(self, category: str) -> List[CommandDescriptor]:
        return list(self._categories.get((category or "").strip().casefold(), ()))

    def __iter__(self):
        return iter(self._commands.values())

    # ── Help formatters ──

    def format_category_list(self) -> str:
        """List all categories with command counts."""
        lines = [f"{self.count} commands in {len(self._categories)} categories:", ""]
        for category in self.get_categories():
            cmds = self._categories[category]
            mutations = sum(1 for c in cmds if c.mutating)
            lines.append(f"  {category} ({len(cmds)}): {len(cmds) - mutations} read, {mutations} mutation")
        lines.append("")
        lines.append('Use help("<category>") to list commands in a category.')
        return "\n".join(lines)

    def format_category(self, category: str) -> str:
        """List all commands in a category."""
        cmds = self._categories.get((category or "").strip().casefold())
        if cmds is None:
            raise CommandNotFoundError(f"Unknown category: '{category}'. Use help() to list categories.")

        lines = [f"{category} ({len(cmds)} commands):", ""]
        for cmd in cmds:
            lines.append(f"  [{cmd.verb}] {cmd.name}: {cmd.description}")
        lines.append("")
        lines.append('Use help("<command>") for parameter details.')
        return "\n".join(lines)

    def format_command(self, name: str) -> str:
        """Show full parameter details for a command."""
        cmd = self.find(name)
        if cmd is None:
            raise CommandNotFoundError(f"Unknown command: '{name}'. Use help() to list categories.")

        lines = [f"{cmd.name} [{cmd.verb}]", f"  {cmd.description}", ""]
        if not cmd.parameters:
            lines.append("  No parameters.")
        else:
            lines.append("  Parameters:")
            for p in cmd.parameters:
                req = "required" if p.required else f"optional, default={describe_default(p.default)}"
                line = f"    {p.name} ({p.type_name}, {req}): {p.description}"
                if p.choices:
                    line += f" [{', '.join(str(c) for c in p.choices)}]"
                lines.append(line)

        example_args = ", '{...}'" if cmd.parameters else ""
        lines.append("")
        lines.append(f'  Example: {cmd.verb}("{cmd.name}"{example_args})')
        return "\n".join(lines)

    def format_help(self, topic: Optional[str] = None) -> str:
        """
        Resolve a help topic: nothing, a category, or a command name.

        Raises:
            CommandNotFoundError: Unknown topic
        """
        topic = (topic or "").strip()
        if not topic:
            return self.format_category_list()
        if "." not in topic and topic.casefold() in self._categories:
            return self.format_category(topic)
        if self.find(topic) is not None:
            return self.format_command(topic)
        raise CommandNotFoundError(f"Unknown help topic: '{topic}'. Use help() to list categories.")
