from bot.modules import pending, photo

MODULES = [
    photo,
    pending,
]
