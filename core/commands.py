"""
Command Interpreter: slash directives typed into chat

    /command argument string

The policy table (core.policy.COMMAND_POLICIES) is checked once before a
handler runs. Usage errors and unknown commands go back to the issuer
only, as ValidationFailed.
"""
import logging
import re
from typing import TYPE_CHECKING, Callable, Dict, Tuple

from core import campaign_engine, encounter, membership
from core.exceptions import NotFound, ValidationFailed
from core.policy import COMMAND_POLICIES, authorize
from models import Lobby
from services import dice_service
from services.naming_service import clean_text

if TYPE_CHECKING:
    from core.broadcaster import ConnectionSession, SessionBroadcaster

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "Commands: /help, /me <action>, /w @name <msg>, /roll <expr|macro>, "
    "/macro add name=expr | del name | list, "
    "/setpass <pass> (GM once set), /kick <name> (GM), /ban <name> (GM), /unban <name> (GM), "
    "/startencounter (GM), /setinit <name> <n> (GM), /next (GM), /endencounter (GM), "
    "Campaign: /camp title <t> (GM), /camp summary <text> (GM), "
    "/scene add <title>|<content> (GM), /scene set <sceneId> (GM), "
    "/load <campaign> (GM), /lock on|off (GM), /start (GM), /force (GM)"
)

WHISPER_PATTERN = re.compile(r"^@?(\S+)\s+([\s\S]+)$")
MACRO_ADD_PATTERN = re.compile(r"^(\w+)\s*=\s*([\s\S]+)$")
SETINIT_PATTERN = re.compile(r"^(\S+)\s+(-?\d+)$")
CAMP_PATTERN = re.compile(r"^(title|summary)\s+([\s\S]+)$")
SCENE_ADD_PATTERN = re.compile(r"^add\s+([^|]+)\|([\s\S]+)$")
SCENE_SET_PATTERN = re.compile(r"^set\s+(\S+)$")

Handler = Callable[["ConnectionSession", Lobby, str, str], None]


def parse(line: str) -> Tuple[str, str]:
    """
    Split "/cmd rest of line" into ("cmd", "rest of line")

    Example:
        parse("/w @Rin meet me")  ->  ("w", "@Rin meet me")
        parse("/")                ->  ("", "")
    """
    body = line[1:] if line.startswith("/") else line
    parts = body.strip().split(None, 1)
    if not parts:
        return "", ""
    command = parts[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""
    return command, args


class CommandInterpreter:
    """Dispatch table for chat commands"""

    def __init__(self, broadcaster: "SessionBroadcaster"):
        self.broadcaster = broadcaster
        self._handlers: Dict[str, Handler] = {
            "help": self._help,
            "me": self._me,
            "w": self._whisper,
            "roll": self._roll,
            "macro": self._macro,
            "setpass": self._setpass,
            "kick": self._kick,
            "ban": self._ban,
            "unban": self._unban,
            "startencounter": self._start_encounter,
            "setinit": self._set_initiative,
            "next": self._next_turn,
            "endencounter": self._end_encounter,
            "camp": self._camp,
            "scene": self._scene,
            "start": self._start_campaign,
            "force": self._force_choice,
            "lock": self._lock,
            "load": self._load,
        }

    @property
    def commands(self):
        return sorted(self._handlers)

    def execute(self, session: "ConnectionSession", lobby: Lobby, actor: str, line: str) -> None:
        """
        Raises:
            ValidationFailed: unknown command or bad usage
            NotAuthorized: policy check failed
            (plus whatever the target engine raises)
        """
        command, args = parse(line)
        handler = self._handlers.get(command)
        if handler is None:
            raise ValidationFailed("Unknown command. Try /help")
        authorize(lobby, actor, COMMAND_POLICIES[command])
        logger.debug(f"/{command} by {actor} in lobby {lobby.name}")
        handler(session, lobby, actor, args)

    # ============ Chat ============

    def _help(self, session, lobby, actor, args):
        session.send("system", {"text": HELP_TEXT})

    def _me(self, session, lobby, actor, args):
        self.broadcaster.post_chat(lobby, actor, f"*{args or 'does something dramatic'}*")

    def _whisper(self, session, lobby, actor, args):
        match = WHISPER_PATTERN.match(args)
        if not match:
            raise ValidationFailed("Usage: /w @name message")
        target, message = match.group(1), match.group(2)
        self.broadcaster.whisper(session, lobby, actor, target, message)

    # ============ Dice ============

    def _roll(self, session, lobby, actor, args):
        self.broadcaster.roll(lobby, actor, args or "d20")

    def _macro(self, session, lobby, actor, args):
        sub, _, rest = args.partition(" ")
        rest = rest.strip()
        macros = lobby.macros.setdefault(actor, {})

        if sub == "add":
            match = MACRO_ADD_PATTERN.match(rest)
            if not match:
                raise ValidationFailed("Use: /macro add name=expr")
            name, expression = match.group(1), clean_text(match.group(2), dice_service.MAX_EXPRESSION_LENGTH)
            dice_service.parse(expression)
            macros[name] = expression
            session.send("system", {"text": f"Macro added: {name} = {expression}"})
        elif sub == "del":
            name = rest.split(" ")[0] if rest else ""
            if not name:
                raise ValidationFailed("Use: /macro del name")
            if macros.pop(name, None) is None:
                raise NotFound(f"No macro named {name}")
            session.send("system", {"text": f"Macro deleted: {name}"})
        elif sub == "list":
            listing = ", ".join(f"{k}={v}" for k, v in macros.items()) or "none"
            session.send("system", {"text": f"Your macros: {listing}"})
        else:
            raise ValidationFailed("Subcommands: add, del, list")

    # ============ Lobby administration ============

    def _setpass(self, session, lobby, actor, args):
        membership.set_password(lobby, actor, args)
        self.broadcaster.system(lobby, "Lobby password set/updated.")
        self.broadcaster.emit_state(lobby)
        self.broadcaster.mirror.record_lobby(lobby)

    def _kick(self, session, lobby, actor, args):
        target = clean_text(args, 24)
        if not target:
            raise ValidationFailed("Usage: /kick <name>")
        self.broadcaster.kick(lobby, target)

    def _ban(self, session, lobby, actor, args):
        target = clean_text(args, 24)
        if not target:
            raise ValidationFailed("Usage: /ban <name>")
        membership.ban(lobby, target)
        self.broadcaster.system(lobby, f"{target} is banned.")
        self.broadcaster.emit_state(lobby)

    def _unban(self, session, lobby, actor, args):
        target = clean_text(args, 24)
        if not target:
            raise ValidationFailed("Usage: /unban <name>")
        membership.unban(lobby, target)
        self.broadcaster.system(lobby, f"{target} is unbanned.")
        self.broadcaster.emit_state(lobby)

    # ============ Encounter ============

    def _start_encounter(self, session, lobby, actor, args):
        encounter.start(lobby)
        self.broadcaster.system(lobby, "Encounter started. Use /setinit <name> <n>.")
        self.broadcaster.emit_state(lobby)

    def _set_initiative(self, session, lobby, actor, args):
        match = SETINIT_PATTERN.match(args)
        if not match:
            raise ValidationFailed("Usage: /setinit <name> <number>")
        name, value = clean_text(match.group(1), 24), int(match.group(2))
        encounter.set_initiative(lobby, name, value)
        self.broadcaster.system(lobby, f"Initiative set: {name} → {value}")
        self.broadcaster.emit_state(lobby)

    def _next_turn(self, session, lobby, actor, args):
        entry = encounter.advance(lobby)
        self.broadcaster.system(lobby, f"Turn: {entry.name}")
        self.broadcaster.emit_state(lobby)

    def _end_encounter(self, session, lobby, actor, args):
        encounter.end(lobby)
        self.broadcaster.system(lobby, "Encounter ended.")
        self.broadcaster.emit_state(lobby)

    # ============ Campaign ============

    def _camp(self, session, lobby, actor, args):
        match = CAMP_PATTERN.match(args)
        if not match:
            raise ValidationFailed("Usage: /camp title <text> | /camp summary <text>")
        field, value = match.group(1), match.group(2)
        if field == "title":
            campaign_engine.update_meta(lobby, title=value)
        else:
            campaign_engine.update_meta(lobby, summary=value)
        self.broadcaster.system(lobby, f"Campaign {field} updated.")
        self.broadcaster.campaign_changed(lobby)

    def _scene(self, session, lobby, actor, args):
        add = SCENE_ADD_PATTERN.match(args)
        set_ = SCENE_SET_PATTERN.match(args)
        if add:
            scene = campaign_engine.add_scene(lobby, add.group(1).strip(), add.group(2).strip())
            self.broadcaster.system(lobby, f"Scene added: {scene.title} ({scene.id})")
        elif set_:
            scene = campaign_engine.set_scene(lobby, set_.group(1))
            self.broadcaster.system(lobby, f"Scene set: {scene.id}")
        else:
            raise ValidationFailed("Use: /scene add <title>|<content> OR /scene set <sceneId>")
        self.broadcaster.campaign_changed(lobby)

    def _start_campaign(self, session, lobby, actor, args):
        self.broadcaster.start_campaign(lobby)

    def _force_choice(self, session, lobby, actor, args):
        self.broadcaster.force_choice(lobby, actor)

    def _lock(self, session, lobby, actor, args):
        mode = args.lower()
        if mode not in ("on", "off"):
            raise ValidationFailed("Usage: /lock on|off")
        self.broadcaster.update_settings(lobby, locked_until_start=(mode == "on"))

    def _load(self, session, lobby, actor, args):
        if not args:
            raise ValidationFailed("Usage: /load <campaign key>")
        self.broadcaster.load_campaign(lobby, args)
