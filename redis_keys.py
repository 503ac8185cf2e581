REDIS_SIGNAL_KEY = "room:signal:{slug}" # room id - hash of offer/answer/activity fields
REDIS_CANDIDATES_KEY = "room:candidates:{role}:{slug}" # sender role + room id - list of JSON candidates

# **`room:signal:{id}` hash fields**
# - `created_at` = ms since epoch
# - `last_activity` = ms since epoch
# - `offer_sdp`, `offer_ts` = current offer (written together in one HSET)
# - `answer_sdp`, `answer_ts` = current answer (written together in one HSET)
# - `host_last_seen`, `guest_last_seen` = ms since epoch of the role's latest request

# **Candidate lists**
# - `room:candidates:host:{id}` is filled by the host and drained by the guest
# - `room:candidates:guest:{id}` is filled by the guest and drained by the host
