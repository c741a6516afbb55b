"""HTML and subject templates for notification emails.

Placeholders use ``str.format`` syntax; every value is HTML-escaped by the
renderer before substitution. ``EMAIL_BASE_STYLES`` is inserted verbatim.
"""

EMAIL_BASE_STYLES = """<style>
  body {
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, Cantarell, sans-serif;
    line-height: 1.6;
    color: #333;
    max-width: 600px;
    margin: 0 auto;
    padding: 20px;
  }
  .header {
    background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
    color: white;
    padding: 30px;
    text-align: center;
    border-radius: 8px 8px 0 0;
  }
  .content {
    background: white;
    padding: 30px;
    border: 1px solid #e1e5e9;
    border-top: none;
  }
  .footer {
    background: #f8f9fa;
    padding: 20px;
    text-align: center;
    font-size: 14px;
    color: #6c757d;
    border-radius: 0 0 8px 8px;
  }
  .button {
    display: inline-block;
    background: #667eea;
    color: white;
    padding: 12px 24px;
    text-decoration: none;
    border-radius: 6px;
    margin: 20px 0;
  }
  .poll-option {
    background: #f8f9fa;
    padding: 10px 15px;
    margin: 5px 0;
    border-left: 4px solid #667eea;
    border-radius: 4px;
  }
  .result-bar {
    background: #e9ecef;
    height: 20px;
    border-radius: 10px;
    overflow: hidden;
    margin: 5px 0;
  }
  .result-fill {
    background: #667eea;
    height: 100%;
  }
  .winner {
    background: #d4edda;
    border-left-color: #28a745;
  }
</style>"""

EMAIL_LAYOUT = """<div class="header">
  <h1>{title}</h1>
  <p>{tagline}</p>
</div>
<div class="content">
{content}
</div>
<div class="footer">
  <p>{footer_note}</p>
  <p><a href="{unsubscribe_url}">Unsubscribe</a> from notifications</p>
</div>"""

SUBJECT_TEMPLATES = {
    "poll_closing_24h": "Poll closing in 24 hours: {poll_question}",
    "poll_closing_1h": "Poll closing in 1 hour: {poll_question}",
    "poll_closed": "Poll results: {poll_question}",
    "new_poll": "New poll available: {poll_question}",
    "voting_reminder": "Reminder: Vote on {poll_question}",
    "results_announcement": "Poll results available: {poll_question}",
}

TEMPLATE_DESCRIPTIONS = {
    "poll_closing_24h": "Warning sent 24 hours before poll closes",
    "poll_closing_1h": "Final warning sent 1 hour before poll closes",
    "poll_closed": "Notification when poll closes with results",
    "new_poll": "Notification about a new poll being created",
    "voting_reminder": "Reminder to vote on active polls",
    "results_announcement": "Announcement of poll results",
}

POLL_CARD = """  <div class="poll-option">
    <h3>{poll_question}</h3>
    {details}
  </div>"""

RESULT_ROW = """  <div class="poll-option{winner_class}">
    <div style="display: flex; justify-content: space-between; align-items: center;">
      <strong>{option}</strong>
      <span>{votes} votes ({percentage}%)</span>
    </div>
    <div class="result-bar">
      <div class="result-fill" style="width: {percentage}%"></div>
    </div>
  </div>"""

ACTION_BUTTON = """  <p>
    <a href="{url}" class="button">{label}</a>
  </p>"""

POLL_CLOSING_24H_CONTENT = """  <h2>Poll closing in 24 hours</h2>
  <p>Hi {user_name},</p>
  <p>This is a reminder that the following poll will be closing in 24 hours:</p>
{poll_card}
  <p>{vote_status}</p>
{action}"""

POLL_CLOSING_1H_CONTENT = """  <h2>Poll closing in 1 hour</h2>
  <p>Hi {user_name},</p>
  <p><strong>Final reminder:</strong> This poll will close in just 1 hour!</p>
{poll_card}
  <p>{vote_status}</p>
{action}"""

POLL_CLOSED_CONTENT = """  <h2>Poll Results Available</h2>
  <p>Hi {user_name},</p>
  <p>The poll you {participation} has now closed. Here are the results:</p>
{poll_card}
{results}
  <p>{winner_line}</p>
{action}"""

NEW_POLL_CONTENT = """  <h2>New Poll Created</h2>
  <p>Hi {user_name},</p>
  <p>{creator_name} has created a new poll that might interest you:</p>
{poll_card}
  <p>Be among the first to vote and help shape the outcome!</p>
{action}"""

VOTING_REMINDER_CONTENT = """  <h2>Reminder: Vote on Active Poll</h2>
  <p>Hi {user_name},</p>
  <p>You haven't voted yet on this poll. Your opinion matters!</p>
{poll_card}
  <p>Join the {total_votes} people who have already voted and make your voice heard.</p>
{action}"""

RESULTS_ANNOUNCEMENT_CONTENT = """  <h2>Poll Results Announcement</h2>
  <p>Hi {user_name},</p>
  <p>The results are in for the poll you were interested in:</p>
{poll_card}
{results}
{action}"""
