
import anagrama


@anagrama.command(aliases=("abc",))
def sort(game: anagrama.Game, order: str = "asc"):
    """Sort the letters alphabetically"""
    letters = sorted(game.scramble, reverse=(order == "desc"))
    game.scramble = "".join(letters)
    anagrama.render_game(game)
    game.notice = "  Letters sorted!"
