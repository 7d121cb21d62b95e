"""
Phase, status and message constants for the Campfire game loop.
"""

# Game phases (stored in game_state.current_phase)
PHASE_LISTEN = "LISTEN"
PHASE_SUBMIT = "SUBMIT"
PHASE_VOTE = "VOTE"
PHASE_PROCESS = "PROCESS"

VALID_PHASES = (PHASE_LISTEN, PHASE_SUBMIT, PHASE_VOTE, PHASE_PROCESS)

# Tick outcomes reported to the scheduler
TICK_WAITING = "Waiting"
TICK_TRANSITIONING = "Transitioning"
TICK_TRANSITIONED = "Transitioned"
TICK_INITIALIZED = "Initialized"
TICK_NOOP = "No-op"
TICK_RECOVERED = "Recovered stale transition lock"

# Options per voting round
OPTIONS_PER_ROUND = 3

# Filler used when there are not enough submissions to build options
PLACEHOLDER_OPTION_TITLE = "Option {index}"
PLACEHOLDER_OPTION_DESCRIPTION = "The campfire holds its breath..."
FALLBACK_TITLE_LENGTH = 40

# Participant-facing rejection messages
MSG_NO_GAME_STATE = "Game state unavailable."
MSG_NO_EPISODE = "No active episode."
MSG_SUBMIT_CLOSED = "Submissions are not open."
MSG_SUBMIT_EXPIRED = "Submissions have closed."
MSG_EMPTY_SUBMISSION = "Please enter a submission."
MSG_VOTING_NOT_OPEN = "Voting is not open."
MSG_VOTING_CLOSED = "Voting has closed."
MSG_VOTE_INVALID = "This vote is no longer valid."
MSG_ALREADY_VOTED = "You have already voted for this option."
MSG_SUBMISSION_NOT_FOUND = "Submission not found."

# Administrative validation messages
MSG_THREE_OPTIONS = "Must provide exactly 3 options."
MSG_OPTION_FIELDS = "Each option must have a title and description."
MSG_INVALID_PHASE = "Invalid phase."
MSG_CAMPAIGN_FIELDS = "Title, Genre, Tone, and Premise are required."
MSG_NO_BIBLE = "No active story bible found. Start a campaign first."
MSG_GENRE_TONE = "Genre and Tone are required."
