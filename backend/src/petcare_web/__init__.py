"""Pet-care schedules with recurring events and email reminders."""
