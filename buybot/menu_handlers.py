# buybot/menu_handlers.py
import functools
import logging

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest
from telegram.ext import ContextTypes

from buybot.config import ADMIN_IDS
from buybot.conversation import ChatState, ConversationTracker
from buybot.errors import InvalidUserInput, RateLimitExceeded
from buybot.settings_store import EMOJI_LAYOUTS, Settings, SettingsStore
from buybot.tracker import BuyTracker

logger = logging.getLogger(__name__)

SAVE_WARNING = "\n\n⚠️ Settings could not be saved to disk; the change is active until restart."


def _store(context) -> SettingsStore:
    return context.bot_data["store"]

def _tracker(context) -> BuyTracker:
    return context.bot_data["tracker"]

def _conversations(context) -> ConversationTracker:
    return context.bot_data["conversations"]


def main_menu_keyboard(settings: Settings) -> InlineKeyboardMarkup:
    keyboard = [
        [
            InlineKeyboardButton("🟢 Activate", callback_data='activate'),
            InlineKeyboardButton("🔴 Deactivate", callback_data='deactivate'),
        ],
        [InlineKeyboardButton("🖼 Set Buy Image", callback_data='set_image')],
        [InlineKeyboardButton("😀 Set Emojis", callback_data='set_emojis')],
        [InlineKeyboardButton(f"🎨 Layout: {settings.selected_emoji_layout}", callback_data='layouts')],
        [InlineKeyboardButton(f"🔀 Shuffle: {'on' if settings.shuffle else 'off'}", callback_data='toggle_shuffle')],
        [InlineKeyboardButton("⚙️ Status", callback_data='status')],
    ]
    return InlineKeyboardMarkup(keyboard)


def layout_keyboard(current: str) -> InlineKeyboardMarkup:
    rows = [[InlineKeyboardButton(f"{'✅ ' if name == current else ''}{name} {''.join(glyphs)}",
                                  callback_data=f'layout:{name}')]
            for name, glyphs in EMOJI_LAYOUTS.items()]
    rows.append([InlineKeyboardButton("⬅️ Back to Main Menu", callback_data='back_to_main_menu')])
    return InlineKeyboardMarkup(rows)


def status_text(settings: Settings) -> str:
    chats = ", ".join(str(c) for c in sorted(settings.subscribed_chats)) or "none"
    return (
        f"Tracking: {'🟢 active' if settings.tracking_enabled else '🔴 paused'}\n"
        f"Min buy: ${settings.min_buy_amount:,.2f}\n"
        f"Buy step: ${settings.buy_step:,.2f} per emoji\n"
        f"Token supply: {settings.token_supply:,}\n"
        f"Emojis: {' '.join(settings.custom_emojis) or '(layout)'}\n"
        f"Layout: {settings.selected_emoji_layout}\n"
        f"Shuffle: {'on' if settings.shuffle else 'off'}\n"
        f"Buy image: {'set' if settings.buy_image_file_id else 'not set'}\n"
        f"Chart URL: {settings.dex_screener_url or 'not set'}\n"
        f"Subscribed chats: {chats}"
    )


async def reply(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str, reply_markup=None) -> None:
    """Answer in the chat the update came from, through the chat rate limiter."""
    limiter = context.bot_data.get("chat_limiter")
    try:
        if limiter is not None:
            await limiter.acquire()
        await context.bot.send_message(update.effective_chat.id, text, reply_markup=reply_markup)
    except RateLimitExceeded as e:
        logger.warning(f"Reply to {update.effective_chat.id} dropped: {e}")


async def edit(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str, reply_markup=None) -> None:
    """Edit the message a callback button belongs to."""
    limiter = context.bot_data.get("chat_limiter")
    try:
        if limiter is not None:
            await limiter.acquire()
        await update.callback_query.message.edit_text(text=text, reply_markup=reply_markup)
    except RateLimitExceeded as e:
        logger.warning(f"Menu edit in {update.effective_chat.id} dropped: {e}")
    except BadRequest as e:
        if "Message is not modified" not in str(e):
            logger.error(f"Error updating menu: {e}")


async def acknowledge(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str, persisted: bool,
                      reply_markup=None) -> None:
    await reply(update, context, text + ("" if persisted else SAVE_WARNING), reply_markup=reply_markup)


def operator_command(handler):
    """Restrict to ADMIN_IDS (when configured) and turn InvalidUserInput into a reply."""
    @functools.wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
        user = update.effective_user
        if ADMIN_IDS and (user is None or user.id not in ADMIN_IDS):
            logger.info(f"Ignoring {handler.__name__} from non-admin {user.id if user else None}")
            if update.callback_query:
                # Stop the client's button spinner
                await update.callback_query.answer()
            return
        try:
            return await handler(update, context, *args, **kwargs)
        except InvalidUserInput as e:
            await reply(update, context, f"❌ {e}")
    return wrapper


def _single_arg(context, usage: str) -> str:
    if not context.args:
        raise InvalidUserInput(f"Usage: {usage}")
    return context.args[0]


# --- Menu ---
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await show_main_menu(update, context, message="Welcome to the Buy Bot! Here are your settings:")

async def show_main_menu(update: Update, context: ContextTypes.DEFAULT_TYPE, message: str = "Select an option:") -> None:
    settings = await _store(context).snapshot()
    reply_markup = main_menu_keyboard(settings)
    text = f"{message}\n\n{status_text(settings)}"
    if update.callback_query:
        await edit(update, context, text, reply_markup=reply_markup)
        return
    await reply(update, context, text, reply_markup=reply_markup)

async def back_to_main_menu(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.callback_query:
        await update.callback_query.answer()
    await show_main_menu(update, context)


# --- Commands ---
@operator_command
async def track(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    persisted = await _store(context).set_tracking(True)
    await acknowledge(update, context, "Tracking activated!", persisted)

@operator_command
async def untrack(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    persisted = await _store(context).set_tracking(False)
    await acknowledge(update, context, "Tracking deactivated!", persisted)

@operator_command
async def add_group(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = update.effective_chat.id
    persisted = await _store(context).add_chat(chat_id)
    await acknowledge(update, context, f"This chat ({chat_id}) will receive buy notifications.", persisted)

@operator_command
async def remove_group(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = update.effective_chat.id
    persisted = await _store(context).remove_chat(chat_id)
    await acknowledge(update, context, f"This chat ({chat_id}) will no longer receive buy notifications.", persisted)

@operator_command
async def set_emojis(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    persisted = await _store(context).set_emojis(context.args or [])
    await acknowledge(update, context, f"Emojis set: {' '.join(_store(context).settings.custom_emojis)}", persisted)

@operator_command
async def set_layout(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    name = _single_arg(context, f"/setlayout <{'|'.join(EMOJI_LAYOUTS)}>")
    persisted = await _store(context).set_layout(name)
    await acknowledge(update, context, f"Emoji layout set to {_store(context).settings.selected_emoji_layout}.", persisted)

@operator_command
async def set_buy_step(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    value = _single_arg(context, "/setbuystep <number>")
    persisted = await _store(context).set_buy_step(value)
    await acknowledge(update, context, f"Buy step set to ${_store(context).settings.buy_step:,.2f} per emoji.", persisted)

@operator_command
async def set_min_buy(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    value = _single_arg(context, "/setminbuy <number>")
    persisted = await _store(context).set_min_buy(value)
    await acknowledge(update, context, f"Minimum buy set to ${_store(context).settings.min_buy_amount:,.2f}.", persisted)

@operator_command
async def set_supply(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    value = _single_arg(context, "/setsupply <integer>")
    persisted = await _store(context).set_token_supply(value)
    await acknowledge(update, context, f"Token supply set to {_store(context).settings.token_supply:,}.", persisted)

@operator_command
async def set_chart_url(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    url = " ".join(context.args or []).strip()
    persisted = await _store(context).set_chart_url(url)
    await acknowledge(update, context, f"Chart URL set: {url}", persisted)

@operator_command
async def set_buy_image(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = update.effective_chat.id
    file_id = None
    message = update.effective_message
    # A /setbuyimage sent as a reply to a photo uses that photo directly
    if message is not None and message.reply_to_message and message.reply_to_message.photo:
        file_id = message.reply_to_message.photo[-1].file_id
    if file_id is None:
        file_id = _conversations(context).pop_image(chat_id)
    if file_id is None:
        await reply(update, context, "No image uploaded. Please upload an image first.")
        return
    persisted = await _store(context).set_buy_image(file_id)
    await acknowledge(update, context, "Buy image updated successfully.", persisted)

@operator_command
async def toggle_shuffle(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    persisted = await _store(context).toggle_shuffle()
    state = "on" if _store(context).settings.shuffle else "off"
    await acknowledge(update, context, f"Emoji shuffle is now {state}.", persisted)

@operator_command
async def manual_buy(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    raw = _single_arg(context, "/buy <amount in USD>")
    try:
        amount = float(raw)
    except ValueError:
        raise InvalidUserInput("Amount must be a number.")
    if amount <= 0:
        raise InvalidUserInput("Amount must be greater than 0.")
    try:
        report = await _tracker(context).publish_manual(amount)
    except RateLimitExceeded as e:
        logger.warning(f"Manual buy abandoned: {e}")
        await reply(update, context, "⏳ Too many requests right now, try again in a moment.")
        return
    if report is None:
        minimum = _store(context).settings.min_buy_amount
        await reply(update, context, f"${amount:,.2f} is below the minimum buy of ${minimum:,.2f}; nothing sent.")
        return
    text = f"Test buy sent to {report.sent} chat(s)."
    if report.failed:
        text += f" Failed: {', '.join(str(cid) for cid, _ in report.failed)}"
    await reply(update, context, text)

async def status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    settings = await _store(context).snapshot()
    await reply(update, context, status_text(settings))


# --- Inbound messages (one-shot prompts) ---
@operator_command
async def receive_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not message.photo:
        return
    chat_id = update.effective_chat.id
    file_id = message.photo[-1].file_id
    conversations = _conversations(context)
    if conversations.consume(chat_id, ChatState.AWAITING_IMAGE):
        persisted = await _store(context).set_buy_image(file_id)
        await acknowledge(update, context, "Buy image updated successfully.", persisted,
                          reply_markup=main_menu_keyboard(_store(context).settings))
        return
    conversations.stash_image(chat_id, file_id)
    await reply(update, context, "Image received. Use /setbuyimage to confirm and set this as the new buy image.")

@operator_command
async def receive_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not message.text:
        return
    chat_id = update.effective_chat.id
    if not _conversations(context).consume(chat_id, ChatState.AWAITING_EMOJI):
        return
    persisted = await _store(context).set_emojis(message.text.split())
    await acknowledge(update, context, f"Emojis set: {' '.join(_store(context).settings.custom_emojis)}", persisted,
                      reply_markup=main_menu_keyboard(_store(context).settings))


# --- Callback queries ---
@operator_command
async def main_menu_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    chat_id = update.effective_chat.id
    store = _store(context)
    data = query.data or ""

    if data == 'activate':
        persisted = await store.set_tracking(True)
        await acknowledge(update, context, "Tracking activated!", persisted, reply_markup=main_menu_keyboard(store.settings))
    elif data == 'deactivate':
        persisted = await store.set_tracking(False)
        await acknowledge(update, context, "Tracking deactivated!", persisted, reply_markup=main_menu_keyboard(store.settings))
    elif data == 'set_image':
        _conversations(context).begin(chat_id, ChatState.AWAITING_IMAGE)
        await reply(update, context, "Please upload a new image.")
    elif data == 'set_emojis':
        _conversations(context).begin(chat_id, ChatState.AWAITING_EMOJI)
        await reply(update, context, "Send the emojis to use, separated by spaces.")
    elif data == 'layouts':
        await edit(update, context, "Choose an emoji layout:",
                   reply_markup=layout_keyboard(store.settings.selected_emoji_layout))
    elif data.startswith('layout:'):
        persisted = await store.set_layout(data.split(':', 1)[1])
        await acknowledge(update, context, f"Emoji layout set to {store.settings.selected_emoji_layout}.", persisted,
                          reply_markup=main_menu_keyboard(store.settings))
    elif data == 'toggle_shuffle':
        persisted = await store.toggle_shuffle()
        await acknowledge(update, context, f"Emoji shuffle is now {'on' if store.settings.shuffle else 'off'}.", persisted,
                          reply_markup=main_menu_keyboard(store.settings))
    elif data == 'status':
        await reply(update, context, status_text(await store.snapshot()))
    elif data == 'back_to_main_menu':
        await show_main_menu(update, context)
    else:
        logger.info(f"Unknown callback data: {data!r}")


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing an update", exc_info=context.error)
