from eventify.pipeline.conflicts import find_conflicts

START = "2025-03-05T10:00:00-05:00"
END = "2025-03-05T11:00:00-05:00"


def test_overlap_is_strict_and_ordered(engine, store_event):
  store_event("Before", "2025-03-05T09:00:00-05:00", "2025-03-05T10:00:00-05:00")
  store_event("After", "2025-03-05T11:00:00-05:00", "2025-03-05T12:00:00-05:00")
  store_event("Overlap late", "2025-03-05T10:30:00-05:00", "2025-03-05T11:30:00-05:00")
  store_event("Overlap early", "2025-03-05T09:30:00-05:00", "2025-03-05T10:15:00-05:00")
  # 10:45 Eastern, written with a Pacific offset.
  store_event("Pacific", "2025-03-05T07:45:00-08:00", "2025-03-05T08:15:00-08:00",
              timezone_name="America/Los_Angeles")
  store_event("Someone else", START, END, user_id="user-2")

  conflicts = find_conflicts(engine, "user-1", START, END)
  assert [c.title for c in conflicts] == ["Overlap early", "Overlap late", "Pacific"]
  assert conflicts[0].start == "2025-03-05T09:30:00-05:00"
  assert conflicts[0].googleEventId is not None


def test_enclosing_event_conflicts(engine, store_event):
  store_event("All day", "2025-03-05T00:00:00-05:00", "2025-03-05T23:59:59-05:00")
  assert [c.title for c in find_conflicts(engine, "user-1", START, END)] == ["All day"]


def test_results_are_capped(engine, store_event):
  for i in range(12):
    store_event(f"Dup {i:02d}", START, END)
  assert len(find_conflicts(engine, "user-1", START, END)) == 10
  assert len(find_conflicts(engine, "user-1", START, END, limit=3)) == 3


def test_no_events_means_no_conflicts(engine):
  assert find_conflicts(engine, "user-1", START, END) == []
