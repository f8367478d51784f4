#!/usr/bin/env python3

# Copyright (c) 2025 James Baker VA7ODR
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of this software
# and associated documentation files (the “Software”), to deal in the Software without
# restriction, including without limitation the rights to use, copy, modify, merge, publish,
# distribute, sublicense, and/or sell copies of the Software, and to permit persons to whom the
# Software is furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all copies or
# substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL
# THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR
# OTHER LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE,
# ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR
# OTHER DEALINGS IN THE SOFTWARE.

# No postponed annotations here: Gradio inspects handlers for gr.Request.

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import gradio as gr

import aifriend.config as aifriend_config
from aifriend.api import create_app
from aifriend.chat_function import ChatFunctionClient, chat_with_friend
from aifriend.inference import GatewayClient
from aifriend.models import DEFAULT_DAILY_MESSAGE_TIME, Persona, PersonaValidationError, Turn
from aifriend.store import FriendStore, build_store
from aifriend.ui_utils import NullContainer, component_factory, safe_component
from aifriend.views import (
    ChatSessionRegistry,
    ChatView,
    CreationView,
    Invoker,
    ListingView,
    NOTICE_LOAD_FAILED,
    ViewError,
    created_notice,
)

log = logging.getLogger("aifriend_app")

aifriend_config.reload_from_environment()

FORM_FIELDS = (
    "name",
    "age",
    "occupation",
    "personality",
    "tone",
    "background",
    "dream",
    "family_info",
    "story",
    "daily_message_time",
)

FIELD_LABELS = {
    "name": "Nom",
    "age": "Âge",
    "occupation": "Profession",
    "personality": "Personnalité",
    "tone": "Ton",
    "background": "Parcours",
    "dream": "Rêve",
    "family_info": "Famille",
    "story": "Histoire",
    "daily_message_time": "Heure du message quotidien",
}

EMPTY_LISTING = "Vous n'avez pas encore d'ami IA. Créez-en un pour commencer !"
EXCERPT_LENGTH = 120
DEFAULT_SESSION = "default"


@dataclass
class AppDependencies:
    store: FriendStore
    invoke: Invoker
    listing: ListingView
    creation: CreationView
    sessions: ChatSessionRegistry
    gateway: Optional[GatewayClient] = None


def _default_invoker(store: FriendStore) -> Tuple[Invoker, Optional[GatewayClient]]:
    if aifriend_config.FUNCTION_URL:
        log.info("Chat replies served by %s", aifriend_config.FUNCTION_URL)
        return ChatFunctionClient(aifriend_config.FUNCTION_URL), None

    gateway = GatewayClient()

    def _invoke(persona_id: str, message: str) -> str:
        return chat_with_friend(persona_id, message, store=store, client=gateway)

    return _invoke, gateway


def build_dependencies(
    *,
    store: Optional[FriendStore] = None,
    invoke: Optional[Invoker] = None,
) -> AppDependencies:
    store_instance = store or build_store()
    gateway = None
    if invoke is None:
        invoke, gateway = _default_invoker(store_instance)
    return AppDependencies(
        store=store_instance,
        invoke=invoke,
        listing=ListingView(store_instance),
        creation=CreationView(store_instance),
        sessions=ChatSessionRegistry(lambda: ChatView(store_instance, invoke)),
        gateway=gateway,
    )


_dependencies: Optional[AppDependencies] = None


def get_dependencies() -> AppDependencies:
    if _dependencies is None:
        raise RuntimeError("App dependencies have not been configured")
    return _dependencies


def configure_dependencies(deps: AppDependencies) -> AppDependencies:
    global _dependencies
    if _dependencies is not None and _dependencies is not deps:
        _dependencies.sessions.close_all()
    _dependencies = deps
    return deps


configure_dependencies(build_dependencies())


def _notify(level: str, message: str) -> None:
    """Show a transient notice in the browser."""

    if level == "warning":
        log.warning("Notice: %s", message)
        notice = getattr(gr, "Warning", None)
    else:
        log.info("Notice: %s", message)
        notice = getattr(gr, "Info", None)
    if callable(notice):
        notice(message)


def _session_key(request: Optional[gr.Request]) -> str:
    key = getattr(request, "session_hash", None) if request is not None else None
    return key or DEFAULT_SESSION


def _show(view: str) -> Tuple[Any, Any, Any]:
    return (
        gr.update(visible=view == "listing"),
        gr.update(visible=view == "creation"),
        gr.update(visible=view == "chat"),
    )


def _excerpt(text: str, limit: int = EXCERPT_LENGTH) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def persona_cards_markdown(personas: Sequence[Persona]) -> str:
    if not personas:
        return EMPTY_LISTING
    cards = []
    for persona in personas:
        cards.append(
            f"### {persona.name}\n"
            f"{persona.age} ans · {persona.occupation}\n\n"
            f"{_excerpt(persona.personality)}"
        )
    return "\n\n---\n\n".join(cards)


def persona_choices(personas: Sequence[Persona]) -> List[Tuple[str, str]]:
    return [(f"{persona.name} ({persona.occupation})", persona.id) for persona in personas]


def chat_title(persona: Optional[Persona]) -> str:
    if persona is None:
        return ""
    return f"## {persona.name}\n{persona.age} ans · {persona.occupation}"


def chat_messages(turns: Sequence[Turn]) -> List[Dict[str, str]]:
    return [turn.to_message() for turn in turns]


def _listing_updates(personas: Sequence[Persona]) -> Tuple[str, Any]:
    return (
        persona_cards_markdown(personas),
        gr.update(choices=persona_choices(personas), value=None),
    )


def _form_reset() -> Tuple[Any, ...]:
    defaults = {"daily_message_time": DEFAULT_DAILY_MESSAGE_TIME.strftime("%H:%M")}
    return tuple(gr.update(value=defaults.get(name, "")) for name in FORM_FIELDS)


def _validation_notice(errors: Dict[str, str]) -> str:
    labels = ", ".join(FIELD_LABELS.get(name, name) for name in FORM_FIELDS if name in errors)
    return f"Veuillez vérifier les champs : {labels}."


def on_load_listing():
    personas = get_dependencies().listing.load()
    return _listing_updates(personas)


def on_show_creation():
    return (*_show("creation"), *_form_reset())


def on_cancel_creation():
    return _show("listing")


def _open_chat(persona_id: str, request: Optional[gr.Request]) -> ChatView:
    return get_dependencies().sessions.open(_session_key(request), persona_id)


def on_open_chat(persona_id: Optional[str], request: gr.Request = None):
    """Switch to the chat screen for the selected persona."""

    if not persona_id:
        return (*_show("listing"), gr.update(), gr.update(), persona_id)
    try:
        view = _open_chat(persona_id, request)
    except ViewError as exc:
        _notify("warning", str(exc))
        return (*_show("listing"), gr.update(), gr.update(), None)
    return (*_show("chat"), chat_title(view.persona), chat_messages(view.turns), view.persona.id)


def on_create(
    name: str,
    age: str,
    occupation: str,
    personality: str,
    tone: str,
    background: str,
    dream: str,
    family_info: str,
    story: str,
    daily_message_time: str,
    request: gr.Request = None,
):
    """Insert the persona from the form and open a chat with it.

    Returns visibility updates for the three screens, the listing, the chat
    header and history, and the active persona id.
    """

    deps = get_dependencies()
    fields = dict(zip(FORM_FIELDS, (
        name, age, occupation, personality, tone, background,
        dream, family_info, story, daily_message_time,
    )))
    unchanged = (*_show("creation"), gr.update(), gr.update(), gr.update(), gr.update(), None)
    try:
        persona = deps.creation.submit(fields)
    except PersonaValidationError as exc:
        _notify("warning", _validation_notice(exc.errors))
        return unchanged
    except ViewError as exc:
        _notify("warning", str(exc))
        return unchanged

    deps.listing.add(persona)
    cards, selector = _listing_updates(deps.listing.personas)
    _notify("info", created_notice(persona))
    try:
        view = _open_chat(persona.id, request)
    except ViewError as exc:
        _notify("warning", str(exc))
        return (*_show("listing"), cards, selector, gr.update(), gr.update(), None)
    return (*_show("chat"), cards, selector, chat_title(persona), chat_messages(view.turns), persona.id)


def on_send(message: str, request: gr.Request = None):
    """Send one message; input stays disabled until the reply is stored."""

    view = get_dependencies().sessions.get(_session_key(request))
    text = (message or "").strip()
    if view is None:
        if text:
            _notify("warning", NOTICE_LOAD_FAILED)
        yield gr.update(), gr.update(), gr.update()
        return
    if not text or view.busy:
        yield gr.update(), chat_messages(view.turns), gr.update()
        return

    pending = chat_messages(view.turns) + [{"role": "user", "content": text}]
    yield gr.update(value="", interactive=False), pending, gr.update(interactive=False)
    try:
        view.send(text)
    except ViewError as exc:
        _notify("warning", str(exc))
    view.poll()
    yield gr.update(interactive=True), chat_messages(view.turns), gr.update(interactive=True)


def on_poll(request: gr.Request = None):
    view = get_dependencies().sessions.get(_session_key(request))
    if view is None or view.busy:
        return gr.update()
    if not view.poll():
        return gr.update()
    return chat_messages(view.turns)


def on_back(request: gr.Request = None):
    deps = get_dependencies()
    deps.sessions.close(_session_key(request))
    personas = deps.listing.load()
    return (*_show("listing"), *_listing_updates(personas), None)


def on_unload(request: gr.Request = None) -> None:
    get_dependencies().sessions.close(_session_key(request))


Timer = component_factory(gr, "Timer", None)
Column = component_factory(gr, "Column", NullContainer)


with gr.Blocks(title="AI Friend") as demo:
    gr.Markdown("# Mes amis IA")

    active_persona = gr.State(value=None)

    with Column(visible=True) as listing_col:
        cards_md = gr.Markdown(EMPTY_LISTING)
        persona_selector = gr.Dropdown(label="Choisir un ami", choices=[], value=None)
        with gr.Row():
            chat_btn = gr.Button("Discuter", variant="primary")
            create_btn = gr.Button("Créer un ami IA")

    with Column(visible=False) as creation_col:
        gr.Markdown("## Créer votre ami IA")
        with gr.Row():
            name_box = gr.Textbox(label=FIELD_LABELS["name"])
            age_box = gr.Textbox(label=FIELD_LABELS["age"], placeholder="1 - 100")
            occupation_box = gr.Textbox(label=FIELD_LABELS["occupation"])
        personality_box = gr.Textbox(label=FIELD_LABELS["personality"], lines=3)
        tone_box = gr.Textbox(label=FIELD_LABELS["tone"])
        background_box = gr.Textbox(label=FIELD_LABELS["background"], lines=3)
        dream_box = gr.Textbox(label=f"{FIELD_LABELS['dream']} (optionnel)")
        family_box = gr.Textbox(label=f"{FIELD_LABELS['family_info']} (optionnel)", lines=2)
        story_box = gr.Textbox(label=f"{FIELD_LABELS['story']} (optionnel)", lines=3)
        time_box = gr.Textbox(
            label=FIELD_LABELS["daily_message_time"],
            value=DEFAULT_DAILY_MESSAGE_TIME.strftime("%H:%M"),
            placeholder="HH:MM",
        )
        with gr.Row():
            submit_btn = gr.Button("Créer", variant="primary")
            cancel_btn = gr.Button("Annuler", variant="secondary")

    with Column(visible=False) as chat_col:
        back_btn = gr.Button("← Retour", variant="secondary")
        title_md = gr.Markdown("")
        chat = safe_component(
            gr.Chatbot,
            label="Conversation",
            type="messages",
            height=480,
            optional_keys=("type", "height"),
        )
        with gr.Row():
            user_box = gr.Textbox(label="Message", placeholder="Écrivez votre message…", scale=4)
            send_btn = gr.Button("Envoyer", variant="primary", scale=0)

    views = [listing_col, creation_col, chat_col]
    form_inputs = [
        name_box,
        age_box,
        occupation_box,
        personality_box,
        tone_box,
        background_box,
        dream_box,
        family_box,
        story_box,
        time_box,
    ]

    demo.load(on_load_listing, inputs=None, outputs=[cards_md, persona_selector])

    create_btn.click(on_show_creation, inputs=None, outputs=views + form_inputs)
    cancel_btn.click(on_cancel_creation, inputs=None, outputs=views)

    chat_btn.click(
        on_open_chat,
        inputs=persona_selector,
        outputs=views + [title_md, chat, active_persona],
    )
    submit_btn.click(
        on_create,
        inputs=form_inputs,
        outputs=views + [cards_md, persona_selector, title_md, chat, active_persona],
    )
    back_btn.click(on_back, inputs=None, outputs=views + [cards_md, persona_selector, active_persona])

    send_btn.click(on_send, inputs=user_box, outputs=[user_box, chat, send_btn])
    user_box.submit(on_send, inputs=user_box, outputs=[user_box, chat, send_btn])

    if Timer is not None:
        poll_timer = Timer(aifriend_config.POLL_SECONDS)
        poll_timer.tick(on_poll, inputs=None, outputs=chat)
    else:
        demo.load(on_poll, inputs=None, outputs=chat, every=aifriend_config.POLL_SECONDS)

    unload = getattr(demo, "unload", None)
    if callable(unload):
        unload(on_unload)


def build_server():
    """Return the HTTP app with the chat function API and the UI mounted at ``/``."""

    deps = get_dependencies()
    app = create_app(deps.store, client=deps.gateway)
    return gr.mount_gradio_app(app, demo, path="/")


def main() -> None:
    import uvicorn

    logging.basicConfig(level=aifriend_config.LOG_LEVEL)
    uvicorn.run(build_server(), host=aifriend_config.SERVER_HOST, port=aifriend_config.SERVER_PORT)


if __name__ == "__main__":
    main()
