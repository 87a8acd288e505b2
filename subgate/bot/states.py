# FSM состояния админки (ручной ввод user_id, мастер рассылки)

from aiogram.fsm.state import State, StatesGroup

class AdminFlow(StatesGroup):
    waiting_user_id_for_check = State()
    waiting_user_id_for_grant = State()
    waiting_user_id_for_revoke = State()

class BroadcastFlow(StatesGroup):
    choosing_recipients = State()
    waiting_recipients = State()
    waiting_message = State()
    preview = State()
