REDIS_ROOM_KEY = "room:state:{slug}" # room id - hash of document/version/activity
REDIS_CHAT_KEY = "room:chat:{slug}" # room id - list of chat entries (json)
REDIS_HISTORY_KEY = "room:history:{slug}" # room id - list of named saves (json)
REDIS_SNAPSHOT_KEY = "snapshot:latest" # full snapshot document (json)

# **Example `room:state:{id}` hash fields**
# - `id` = `{roomId}`
# - `code` = current document text
# - `version` = integer
# - `last_edited_by` = display name or connection id
# - `created_at` / `last_activity` = epoch milliseconds
