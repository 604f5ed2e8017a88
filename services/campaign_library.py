"""
Campaign library: predefined campaign definitions

Definitions are plain dicts kept here; load_campaign() always returns a
fresh deep copy so lobbies never share scene lists.
"""
from typing import Dict, List

from core.exceptions import NotFound
from models import Campaign

DEFINITIONS: Dict[str, dict] = {
    "embers_of_argeth": {
        "title": "Embers of Argeth",
        "summary": "A starter mini-campaign: escort work, missing caravans and a goblin cave.",
        "currentSceneId": "s_intro",
        "scenes": [
            {"id": "s_intro", "title": "Arrival in Graywick",
             "content": "You reach the foggy mining town of Graywick. A notice board mentions escort work and missing caravans.",
             "choices": [
                 {"id": "c_intro_tavern", "text": "Head to the Burnt Anvil tavern", "targetSceneId": "s_tavern"},
                 {"id": "c_intro_board", "text": "Study the notice board", "targetSceneId": "s_board"},
             ]},
            {"id": "s_tavern", "title": "The Burnt Anvil",
             "content": "A grizzled foreman offers 10 gp each to guard a wagon to the riverside mill at dawn.",
             "choices": [
                 {"id": "c_tavern_accept", "text": "Accept the job (escort quest)", "targetSceneId": "s_road"},
                 {"id": "c_tavern_market", "text": "Wander the night market", "targetSceneId": "s_market"},
             ]},
            {"id": "s_board", "title": "Notice Board",
             "content": "Multiple caravans are late. Witnesses whisper about red-eyed goblins near the Old Road.",
             "choices": [
                 {"id": "c_board_investigate", "text": "Investigate the Old Road", "targetSceneId": "s_road"},
                 {"id": "c_board_ignore", "text": "Ignore and find rumors", "targetSceneId": "s_market"},
             ]},
            {"id": "s_market", "title": "Night Market",
             "content": "Lanterns sway, traders haggle. A sailor swears the ruined lighthouse glows at midnight.",
             "choices": [
                 {"id": "c_market_lighthouse", "text": "Scout the lighthouse", "targetSceneId": "s_lighthouse"},
                 {"id": "c_market_sleep", "text": "Rest and take the escort job", "targetSceneId": "s_road"},
             ]},
            {"id": "s_road", "title": "Ambush on the Old Road",
             "content": "Rain slicks the stones. Goblins spring from the brush! After the skirmish, tracks lead into the woods.",
             "choices": [
                 {"id": "c_road_track", "text": "Follow the tracks", "targetSceneId": "s_cave"},
                 {"id": "c_road_help", "text": "Help the wounded, return to town", "targetSceneId": "s_graywick"},
             ]},
            {"id": "s_cave", "title": "Gloomroot Cave",
             "content": "Mushrooms glow faintly. Captives plead from wicker cages. A crude idol hums with heat.",
             "choices": [
                 {"id": "c_cave_rescue", "text": "Rescue the captives", "targetSceneId": "s_reward"},
                 {"id": "c_cave_idol", "text": "Smash the idol", "targetSceneId": "s_reward"},
             ]},
            {"id": "s_lighthouse", "title": "Ruined Lighthouse",
             "content": "Wind howls through broken windows. Below, a sealed hatch marks an old vault bearing the sigil of Argeth.",
             "choices": [
                 {"id": "c_lh_descend", "text": "Descend into the vault", "targetSceneId": "s_reward"},
             ]},
            {"id": "s_graywick", "title": "Back to Graywick",
             "content": "The town thanks you. The foreman suggests returning to the road to finish the job.",
             "choices": [
                 {"id": "c_graywick_road", "text": "Return to the Old Road", "targetSceneId": "s_road"},
             ]},
            {"id": "s_reward", "title": "Aftermath",
             "content": "With the threat blunted, the town offers coin and rumors of a deeper power called the Ember Crown.",
             "choices": []},
        ],
        "handouts": [
            {"id": "h_notice", "title": "Notice Board",
             "content": "Escort needed: guard a wagon to the mill at dawn. Pay: 10 gp each."},
        ],
        "quests": [
            {"id": "q_escort", "title": "Escort the supply wagon to the mill", "done": False},
            {"id": "q_goblins", "title": "Discover why caravans are missing", "done": False},
        ],
    },
    "the_drowned_bell": {
        "title": "The Drowned Bell",
        "summary": "A one-evening coastal mystery: a church bell rings from beneath the tide.",
        "currentSceneId": "d_harbor",
        "scenes": [
            {"id": "d_harbor", "title": "Saltmere Harbor",
             "content": "Every night at low tide a bell tolls from the bay. The fishers refuse to sail.",
             "choices": [
                 {"id": "c_harbor_priest", "text": "Ask the priest about the old chapel", "targetSceneId": "d_chapel"},
                 {"id": "c_harbor_boat", "text": "Borrow a boat and row out", "targetSceneId": "d_bay"},
             ]},
            {"id": "d_chapel", "title": "The Cliffside Chapel",
             "content": "The bell tower is empty. A logbook describes the bell sinking with a smuggler's ship.",
             "choices": [
                 {"id": "c_chapel_bay", "text": "Row out at low tide", "targetSceneId": "d_bay"},
             ]},
            {"id": "d_bay", "title": "The Sunken Wreck",
             "content": "Beneath the water a wreck glows green. Something inside is ringing the bell on purpose.",
             "choices": [
                 {"id": "c_bay_dive", "text": "Dive into the wreck", "targetSceneId": "d_finale"},
                 {"id": "c_bay_return", "text": "Return to the harbor for help", "targetSceneId": "d_harbor"},
             ]},
            {"id": "d_finale", "title": "The Bell Ringer",
             "content": "A drowned smuggler, bound to the bell, begs to be freed from his bargain.",
             "choices": []},
        ],
        "handouts": [
            {"id": "h_logbook", "title": "Chapel Logbook",
             "content": "The bell was lost with the Gull's Wager, thirty winters past."},
        ],
        "quests": [
            {"id": "q_bell", "title": "Silence the drowned bell", "done": False},
        ],
    },
}


def list_campaigns() -> List[dict]:
    """Keys, titles and summaries for the /campaigns listing"""
    return [
        {"key": key, "title": definition["title"], "summary": definition["summary"]}
        for key, definition in DEFINITIONS.items()
    ]


def load_campaign(key: str) -> Campaign:
    """
    Materialize a definition into a fresh Campaign

    Raises:
        NotFound: unknown campaign key
    """
    definition = DEFINITIONS.get(key)
    if definition is None:
        raise NotFound(f"Unknown campaign: {key}")
    return Campaign.model_validate({**definition, "key": key})
