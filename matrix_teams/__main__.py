from matrix_teams.main import app

app(prog_name="matrix-teams-as")
