"""
PM Team Telegram Bot

Chat front end for the PM team: commands for requests, approvals and
reports, plus free-text conversation with the PM agent.
"""
